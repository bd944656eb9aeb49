"""Poll-until-ready helper replacing fixed sleeps between dependent calls."""

import time
from typing import Any, Callable

from sqlhadeployer.errors import DeployerError
from sqlhadeployer.errors_catalog import actionable_error
from sqlhadeployer.models import WaitPolicy


class Waiter:
    """Polls a readiness probe with exponential backoff until it succeeds or times out."""

    def __init__(self, logger, console, sleep=time.sleep, clock=time.monotonic):
        self.logger = logger
        self.console = console
        self.sleep = sleep
        self.clock = clock

    def until(
        self,
        description: str,
        probe: Callable[[], Any],
        policy: WaitPolicy,
        tolerate_errors: bool = True,
    ) -> Any:
        """Returns the first truthy probe result.

        With ``tolerate_errors`` a DeployerError from the probe counts as "not
        ready yet" and the last one is attached to the timeout error; without
        it the error propagates immediately.
        """
        self.console.print(f"[yellow]Waiting for {description}...[/yellow]")
        deadline = self.clock() + policy.timeout_seconds
        interval = policy.initial_interval
        last_error = None
        attempt = 0

        while True:
            attempt += 1
            try:
                result = probe()
            except DeployerError as exc:
                if not tolerate_errors:
                    raise
                result = None
                last_error = exc
                self.logger.debug("Readiness probe for %s failed: %s", description, exc)

            if result:
                self.logger.info("%s is ready after %s check(s).", description, attempt)
                return result

            remaining = deadline - self.clock()
            if remaining <= 0:
                message = actionable_error(
                    "readiness_timeout",
                    timeout=f"{policy.timeout_seconds:g}",
                    description=description,
                )
                if last_error is not None:
                    raise DeployerError(f"{message}\nLast error: {last_error}") from last_error
                raise DeployerError(message)

            delay = min(interval, policy.max_interval, remaining)
            self.logger.debug("%s not ready, checking again in %.1fs", description, delay)
            self.sleep(delay)
            interval = interval * policy.multiplier
