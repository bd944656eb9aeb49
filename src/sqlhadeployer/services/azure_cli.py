"""Azure CLI invocation helpers for SQLHA Deployer."""

import json
from typing import Any, Iterable, List, Optional

from packaging import version

from sqlhadeployer.constants import MIN_AZ_CLI_VERSION, NOT_FOUND_PATTERNS
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.errors_catalog import actionable_error
from sqlhadeployer.models import FAIL_FAST, RetryPolicy
from sqlhadeployer.services.command_runner import mask_secrets


class AzureCliService:
    """Runs `az` commands as JSON calls on top of the command runner."""

    def __init__(self, command_runner, logger, console, retry: RetryPolicy = FAIL_FAST):
        self.command_runner = command_runner
        self.logger = logger
        self.console = console
        self.retry = retry

    @staticmethod
    def _display(cmd: List[str], secrets: Iterable[str]) -> str:
        return mask_secrets(" ".join(cmd), secrets)

    @staticmethod
    def is_not_found(stderr: str) -> bool:
        text = (stderr or "").lower()
        return any(pattern in text for pattern in NOT_FOUND_PATTERNS)

    @staticmethod
    def parse_json(stdout: str, cmd_str: str) -> Any:
        clean = (stdout or "").strip()
        if not clean:
            return None
        try:
            return json.loads(clean)
        except json.JSONDecodeError as exc:
            raise DeployerError(f"Unexpected non-JSON output from: {cmd_str}") from exc

    def build_command(self, args: List[str]) -> List[str]:
        return ["az"] + list(args) + ["--only-show-errors", "--output", "json"]

    def az(
        self,
        args: List[str],
        retry: Optional[RetryPolicy] = None,
        secrets: Iterable[str] = (),
        sensitive: bool = False,
    ) -> Any:
        """Runs one `az` call. `sensitive` keeps its output out of the log."""
        secrets = tuple(secrets)
        cmd = self.build_command(args)
        display = self._display(cmd, secrets)
        result = self.command_runner.run(
            cmd,
            check=True,
            capture_output=True,
            retry=retry or self.retry,
            display=display,
            redact=secrets,
            log_output=not sensitive,
        )
        return self.parse_json(result.stdout, display)

    def show(self, args: List[str], sensitive: bool = False) -> Optional[Any]:
        """Returns the resource JSON, or None when Azure reports it does not exist."""
        cmd = self.build_command(args)
        display = " ".join(cmd)
        result = self.command_runner.run(
            cmd,
            check=False,
            capture_output=True,
            retry=self.retry,
            display=display,
            log_output=not sensitive,
        )
        if result.returncode == 0:
            return self.parse_json(result.stdout, display)

        stderr = (result.stderr or "").strip()
        if self.is_not_found(stderr):
            self.logger.debug("Resource not found: %s", display)
            return None

        raise DeployerError(f"Command failed ({result.returncode}): {display}\n{stderr}")

    def check_cli_version(self) -> str:
        try:
            data = self.az(["version"])
        except DeployerError as exc:
            if "not found" in str(exc):
                raise DeployerError(actionable_error("az_not_found")) from exc
            raise

        found = str((data or {}).get("azure-cli", "0.0.0"))
        if version.parse(found) < version.parse(MIN_AZ_CLI_VERSION):
            raise DeployerError(
                actionable_error("az_too_old", found=found, required=MIN_AZ_CLI_VERSION)
            )
        self.logger.debug("Azure CLI version %s", found)
        return found

    def ensure_logged_in(self) -> str:
        account = self._current_account()
        if account is None:
            self.console.print("[yellow]No active Azure session, starting `az login`...[/yellow]")
            self.command_runner.run(["az", "login"], check=True)
            account = self._current_account()
            if account is None:
                raise DeployerError("Azure login did not produce an active subscription.")

        subscription_id = str(account.get("id", ""))
        self.logger.info("Using subscription: %s", subscription_id)
        return subscription_id

    def _current_account(self) -> Optional[dict]:
        cmd = self.build_command(["account", "show"])
        result = self.command_runner.run(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            return None
        return self.parse_json(result.stdout, " ".join(cmd))

    def validate_environment(self) -> str:
        self.console.print("[blue]Validating Azure CLI environment...[/blue]")
        self.check_cli_version()
        subscription_id = self.ensure_logged_in()
        self.console.print("[green]Azure CLI is available and logged in.[/green]")
        return subscription_id
