"""Planned and forced availability group failover."""

from typing import Any, Dict, Optional

from sqlhadeployer.errors import DeployerError
from sqlhadeployer.errors_catalog import actionable_error
from sqlhadeployer.models import DeploymentContext, RunSettings
from sqlhadeployer.services.sql_scripts import failover_statement


class FailoverService:
    """Moves the primary role to the other replica, issued on the target secondary."""

    def __init__(self, remote_sql, cluster_service, waiter, logger, console):
        self.remote_sql = remote_sql
        self.cluster_service = cluster_service
        self.waiter = waiter
        self.logger = logger
        self.console = console

    def _resolve_target(
        self, context: DeploymentContext, current_primary: Optional[str], target: Optional[str]
    ) -> str:
        instances = context.instance_names()
        if target:
            if target not in instances:
                raise DeployerError(f"Unknown failover target {target}. Expected one of: {', '.join(instances)}.")
            if target == current_primary:
                raise DeployerError(f"{target} already holds the primary role.")
            return target

        if current_primary is None:
            raise DeployerError("Could not determine the current primary; pass an explicit failover target.")
        return next(vm for vm in instances if vm != current_primary)

    def _wait_for_primary(self, context: DeploymentContext, settings: RunSettings, target: str):
        def target_is_primary() -> bool:
            group = self.remote_sql.availability_group(context, target, settings.ag_name)
            replica = str((group or {}).get("primary_replica") or "").split("\\")[0]
            return replica.lower() == target.lower()

        self.waiter.until(f"{target} to take the primary role", target_is_primary, settings.wait_policy)

    def planned(
        self, context: DeploymentContext, settings: RunSettings, target: Optional[str] = None
    ) -> Dict[str, Any]:
        primary = self.cluster_service.primary_vm(context, settings)
        if primary is None:
            raise DeployerError(f"No instance reports a primary replica for {settings.ag_name}.")
        target = self._resolve_target(context, primary, target)

        replicas = self.remote_sql.replica_states(context, primary, settings.ag_name)
        if len(replicas) < 2:
            raise DeployerError(f"{settings.ag_name} reports {len(replicas)} replica(s); planned failover needs two.")
        for replica in replicas:
            if not replica.is_healthy:
                raise DeployerError(
                    actionable_error(
                        "unhealthy_before_failover",
                        replica=replica.replica_server_name,
                        health=replica.synchronization_health or "UNKNOWN",
                    )
                )

        self.console.print(f"[blue]Planned failover of {settings.ag_name}: {primary} -> {target}[/blue]")
        self.remote_sql.execute(context, target, failover_statement(settings.ag_name))
        self._wait_for_primary(context, settings, target)
        self.console.print(f"[green]{target} is now the primary replica.[/green]")
        return {"mode": "planned", "previous_primary": primary, "primary": target}

    def forced(
        self,
        context: DeploymentContext,
        settings: RunSettings,
        target: Optional[str] = None,
        allow_data_loss: bool = False,
    ) -> Dict[str, Any]:
        if not allow_data_loss:
            raise DeployerError(actionable_error("forced_failover_not_allowed"))

        primary = self.cluster_service.primary_vm(context, settings)
        target = self._resolve_target(context, primary, target)

        self.console.print(
            f"[bold yellow]Forced failover of {settings.ag_name} to {target} (data loss possible)[/bold yellow]"
        )
        self.remote_sql.execute(context, target, failover_statement(settings.ag_name, force=True))
        self._wait_for_primary(context, settings, target)
        self.logger.warning(
            "Data movement to the former primary stays suspended after a forced failover. "
            "Resume it with ALTER DATABASE ... SET HADR RESUME once the replica is back."
        )
        return {"mode": "forced", "previous_primary": primary, "primary": target}
