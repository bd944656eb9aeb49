"""SQL Server access through `az vm run-command` on the instances."""

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import DeploymentContext, ReplicaState
from sqlhadeployer.services import sql_scripts


class RemoteSqlService:
    """Runs catalog queries and DDL on an instance without a direct connection."""

    def __init__(self, azure_cli, logger):
        self.azure_cli = azure_cli
        self.logger = logger

    @staticmethod
    def split_output(response: Any) -> Tuple[str, str]:
        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        for item in (response or {}).get("value") or []:
            code = str(item.get("code", ""))
            message = str(item.get("message") or "")
            if "StdErr" in code:
                stderr_parts.append(message)
            else:
                stdout_parts.append(message)
        return "\n".join(stdout_parts).strip(), "\n".join(stderr_parts).strip()

    @staticmethod
    def extract_json(stdout: str) -> Any:
        begin = stdout.find(sql_scripts.JSON_BEGIN_MARKER)
        end = stdout.find(sql_scripts.JSON_END_MARKER)
        if begin < 0 or end < begin:
            raise DeployerError(f"No JSON payload in run-command output:\n{stdout}")

        payload = stdout[begin + len(sql_scripts.JSON_BEGIN_MARKER) : end].strip()
        if not payload:
            return []
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise DeployerError(f"Invalid JSON payload in run-command output: {payload}") from exc

    def run_script(
        self,
        context: DeploymentContext,
        vm_name: str,
        script: str,
        secrets: Iterable[str] = (),
    ) -> str:
        response = self.azure_cli.az(
            [
                "vm",
                "run-command",
                "invoke",
                "--resource-group",
                context.resource_group,
                "--name",
                vm_name,
                "--command-id",
                "RunPowerShellScript",
                "--scripts",
                script,
            ],
            secrets=secrets,
        )
        stdout, stderr = self.split_output(response)
        if stderr:
            if sql_scripts.JSON_BEGIN_MARKER in stdout or "SQLHA-OK" in stdout:
                self.logger.debug("run-command on %s wrote to stderr: %s", vm_name, stderr)
            else:
                raise DeployerError(f"Script on {vm_name} failed:\n{stderr}")
        return stdout

    def query(
        self,
        context: DeploymentContext,
        vm_name: str,
        query: str,
        columns: Sequence[str],
    ) -> List[Dict[str, Any]]:
        stdout = self.run_script(context, vm_name, sql_scripts.powershell_query(query, columns))
        rows = self.extract_json(stdout)
        if isinstance(rows, dict):
            rows = [rows]
        return [row for row in rows or [] if isinstance(row, dict)]

    def execute(self, context: DeploymentContext, vm_name: str, statement: str) -> str:
        self.logger.info("Executing on %s: %s", vm_name, statement)
        return self.run_script(context, vm_name, sql_scripts.powershell_statement(statement))

    def availability_group(self, context: DeploymentContext, vm_name: str, ag_name: str):
        rows = self.query(
            context,
            vm_name,
            sql_scripts.availability_group_query(ag_name),
            ("name", "primary_replica"),
        )
        return rows[0] if rows else None

    def replica_states(
        self, context: DeploymentContext, vm_name: str, ag_name: str
    ) -> List[ReplicaState]:
        rows = self.query(
            context,
            vm_name,
            sql_scripts.replica_state_query(ag_name),
            sql_scripts.REPLICA_COLUMNS,
        )
        return [ReplicaState.from_row(row) for row in rows]

    def listeners(self, context: DeploymentContext, vm_name: str, ag_name: str):
        return self.query(
            context,
            vm_name,
            sql_scripts.listener_query(ag_name),
            sql_scripts.LISTENER_COLUMNS,
        )

    def primary_instance(self, context: DeploymentContext, ag_name: str) -> Optional[str]:
        """Instance currently holding the primary role, asked of the first one that answers."""
        instances = context.instance_names()
        for vm_name in instances:
            try:
                group = self.availability_group(context, vm_name, ag_name)
            except DeployerError as exc:
                self.logger.debug("Could not query %s: %s", vm_name, exc)
                continue
            if not group or not group.get("primary_replica"):
                continue

            replica = str(group["primary_replica"]).split("\\")[0].lower()
            return next((vm for vm in instances if vm.lower() == replica), None)
        return None
