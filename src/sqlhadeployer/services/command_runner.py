"""Subprocess execution service for SQLHA Deployer."""

import subprocess
import time
from typing import Iterable, List, Optional

from sqlhadeployer.constants import NON_RETRYABLE_FAILURE_PATTERNS
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import FAIL_FAST, RetryPolicy

MASK = "***"


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


class CommandRunner:
    """Runs external commands with consistent error handling and retry policy."""

    def __init__(self, logger, default_timeout: Optional[float] = None, sleep=time.sleep):
        self.logger = logger
        self.default_timeout = default_timeout
        self.sleep = sleep

    @staticmethod
    def is_transient(evidence: str, policy: RetryPolicy) -> bool:
        text = evidence.lower()
        if not text.strip():
            return policy.retry_any_failure

        if any(pattern in text for pattern in NON_RETRYABLE_FAILURE_PATTERNS):
            return False

        if policy.retry_any_failure:
            return True
        return any(pattern in text for pattern in policy.transient_patterns)

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry: RetryPolicy = FAIL_FAST,
        display: Optional[str] = None,
        redact: Iterable[str] = (),
        log_output: bool = True,
    ) -> subprocess.CompletedProcess:
        redact = tuple(redact)
        cmd_str = display or mask_secrets(" ".join(cmd), redact)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        max_attempts = max(1, retry.max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                result = subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=effective_timeout,
                )
            except FileNotFoundError as exc:
                raise DeployerError(
                    f"Required command not found: {cmd[0]}. Please install it and try again."
                ) from exc
            except subprocess.TimeoutExpired as exc:
                if attempt < max_attempts:
                    delay = retry.delay_for(attempt)
                    self.logger.warning(
                        "Command timed out on attempt %s/%s. Retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        delay,
                        cmd_str,
                    )
                    self.sleep(delay)
                    continue
                raise DeployerError(
                    f"Command timed out after {effective_timeout}s: {cmd_str}"
                ) from exc
            except OSError as exc:
                raise DeployerError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout and log_output:
                self.logger.debug("Command output: %s", mask_secrets(result.stdout.strip(), redact))

            if result.returncode == 0:
                return result

            stderr = mask_secrets((result.stderr or "").strip(), redact) if capture_output else ""
            message = f"Command failed ({result.returncode}): {cmd_str}"
            if stderr:
                message = f"{message}\n{stderr}"

            if attempt < max_attempts and self.is_transient(stderr, retry):
                delay = retry.delay_for(attempt)
                self.logger.warning(
                    "Command failed on attempt %s/%s and will be retried in %.1fs.\n%s",
                    attempt,
                    max_attempts,
                    delay,
                    message,
                )
                self.sleep(delay)
                continue

            if check:
                raise DeployerError(message)

            self.logger.debug(message)
            return result

        raise DeployerError(f"Command failed after retries: {cmd_str}")
