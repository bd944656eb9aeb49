"""Read-only reconciliation of the deployed cluster against the intended configuration."""

import socket
from typing import Any, Callable, Dict, List, Optional, Tuple

from rich.table import Table

from sqlhadeployer.constants import (
    FAULT_DOMAIN_COUNT,
    INSTANCE_COUNT,
    PROBE_NAME,
    RULE_NAME,
    SQL_IAAS_EXTENSION_NAME,
    SQL_PORT,
    UPDATE_DOMAIN_COUNT,
)
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import CheckResult, CheckStatus, DeploymentContext, RunSettings

STATUS_STYLES = {
    CheckStatus.PASSED: "[green]PASSED[/green]",
    CheckStatus.FAILED: "[red]FAILED[/red]",
    CheckStatus.INCONCLUSIVE: "[yellow]INCONCLUSIVE[/yellow]",
}


def expected_probe(settings: RunSettings) -> Dict[str, Any]:
    return {"protocol": "Tcp", "port": settings.probe_port}


EXPECTED_RULE = {
    "protocol": "Tcp",
    "frontendPort": SQL_PORT,
    "backendPort": SQL_PORT,
    "enableFloatingIP": True,
    "disableOutboundSnat": True,
}


def _compare(actual: Dict[str, Any], expected: Dict[str, Any]) -> List[str]:
    mismatches = []
    for key, value in expected.items():
        found = actual.get(key)
        if isinstance(value, str) and isinstance(found, str):
            matches = found.lower() == value.lower()
        else:
            matches = found == value
        if not matches:
            mismatches.append(f"{key}={found!r} (expected {value!r})")
    return mismatches


def _inconclusive(name: str, detail: str) -> CheckResult:
    return CheckResult(name=name, status=CheckStatus.INCONCLUSIVE, detail=detail)


class ValidatorService:
    """Runs every check, never short-circuits, and never mutates anything."""

    def __init__(self, azure_cli, remote_sql, logger, console, connect=socket.create_connection):
        self.azure_cli = azure_cli
        self.remote_sql = remote_sql
        self.logger = logger
        self.console = console
        self.connect = connect
        self._cache: Dict[Tuple[str, ...], Any] = {}

    def _show(self, args: List[str]) -> Optional[Any]:
        key = tuple(args)
        if key not in self._cache:
            self._cache[key] = self.azure_cli.show(args)
        return self._cache[key]

    def checks(self) -> List[Tuple[str, Callable[[DeploymentContext, RunSettings], CheckResult]]]:
        return [
            ("availability_set_domains", self.check_availability_set),
            ("instance_fault_domains", self.check_instance_fault_domains),
            ("vm_power_state", self.check_power_state),
            ("sql_iaas_registration", self.check_registration),
            ("sql_iaas_extension", self.check_extension),
            ("load_balancer_frontend", self.check_lb_frontend),
            ("load_balancer_probe", self.check_lb_probe),
            ("load_balancer_rule", self.check_lb_rule),
            ("availability_group", self.check_availability_group),
            ("replica_health", self.check_replica_health),
            ("listener", self.check_listener),
            ("listener_reachability", self.check_listener_reachability),
        ]

    def run(self, context: DeploymentContext, settings: RunSettings) -> List[CheckResult]:
        self._cache.clear()
        results = []
        for name, check in self.checks():
            self.logger.info("Running check: %s", name)
            try:
                result = check(context, settings)
            except DeployerError as exc:
                result = _inconclusive(name, f"Could not evaluate: {exc}")
            self.logger.info("Check %s: %s %s", name, result.status.value, result.detail)
            results.append(result)
        return results

    # Placement

    def check_availability_set(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "availability_set_domains"
        avset = self._show(
            ["vm", "availability-set", "show", "-g", context.resource_group, "--name", context.avset_name]
        )
        if not avset:
            return CheckResult(name, CheckStatus.FAILED, detail=f"{context.avset_name} not found")

        observed = f"{avset.get('platformFaultDomainCount')}/{avset.get('platformUpdateDomainCount')}"
        expected = f"{FAULT_DOMAIN_COUNT}/{UPDATE_DOMAIN_COUNT}"
        status = CheckStatus.PASSED if observed == expected else CheckStatus.FAILED
        return CheckResult(name, status, observed=observed, expected=expected, detail="fault/update domains")

    def _instance_view(self, context: DeploymentContext, vm_name: str) -> Optional[Dict[str, Any]]:
        return self._show(["vm", "get-instance-view", "-g", context.resource_group, "--name", vm_name])

    def check_instance_fault_domains(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "instance_fault_domains"
        avset = self._show(
            ["vm", "availability-set", "show", "-g", context.resource_group, "--name", context.avset_name]
        )
        if not avset:
            return _inconclusive(name, f"{context.avset_name} not found")

        members = sorted(
            str(vm.get("id") or "").rsplit("/", 1)[-1].lower() for vm in avset.get("virtualMachines") or []
        )
        vm_names = context.instance_names(INSTANCE_COUNT)
        expected_members = sorted(vm_name.lower() for vm_name in vm_names)
        if members != expected_members:
            return CheckResult(
                name,
                CheckStatus.FAILED,
                observed=", ".join(members) or "none",
                expected=", ".join(expected_members),
                detail=f"{len(members)} VMs in {context.avset_name}",
            )

        domains = {}
        for vm_name in vm_names:
            view = self._instance_view(context, vm_name)
            if not view:
                return CheckResult(name, CheckStatus.FAILED, detail=f"{vm_name} not found")
            domains[vm_name] = (view.get("instanceView") or {}).get("platformFaultDomain")

        observed = ", ".join(f"{vm}=FD{domain}" for vm, domain in domains.items())
        distinct = len(set(domains.values())) == INSTANCE_COUNT and None not in domains.values()
        return CheckResult(
            name,
            CheckStatus.PASSED if distinct else CheckStatus.FAILED,
            observed=observed,
            expected="distinct fault domains",
        )

    def check_power_state(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "vm_power_state"
        states = {}
        for vm_name in context.instance_names(INSTANCE_COUNT):
            view = self._instance_view(context, vm_name)
            statuses = ((view or {}).get("instanceView") or {}).get("statuses") or []
            power = next(
                (item.get("code", "") for item in statuses if item.get("code", "").startswith("PowerState/")),
                "PowerState/unknown",
            )
            states[vm_name] = power.split("/", 1)[1]

        observed = ", ".join(f"{vm}={state}" for vm, state in states.items())
        running = all(state == "running" for state in states.values())
        return CheckResult(
            name,
            CheckStatus.PASSED if running else CheckStatus.FAILED,
            observed=observed,
            expected="running",
        )

    # Management extension

    def check_registration(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "sql_iaas_registration"
        states = {}
        for vm_name in context.instance_names(INSTANCE_COUNT):
            registration = self._show(["sql", "vm", "show", "-g", context.resource_group, "--name", vm_name])
            states[vm_name] = (registration or {}).get("provisioningState", "NotRegistered")

        observed = ", ".join(f"{vm}={state}" for vm, state in states.items())
        ok = all(state == "Succeeded" for state in states.values())
        return CheckResult(name, CheckStatus.PASSED if ok else CheckStatus.FAILED, observed=observed, expected="Succeeded")

    def check_extension(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "sql_iaas_extension"
        states = {}
        for vm_name in context.instance_names(INSTANCE_COUNT):
            extensions = self.azure_cli.az(
                ["vm", "extension", "list", "-g", context.resource_group, "--vm-name", vm_name]
            ) or []
            agent = next((ext for ext in extensions if ext.get("name") == SQL_IAAS_EXTENSION_NAME), None)
            states[vm_name] = (agent or {}).get("provisioningState", "Missing")

        observed = ", ".join(f"{vm}={state}" for vm, state in states.items())
        ok = all(state == "Succeeded" for state in states.values())
        return CheckResult(name, CheckStatus.PASSED if ok else CheckStatus.FAILED, observed=observed, expected="Succeeded")

    # Load balancer

    def _load_balancer(self, context: DeploymentContext, settings: RunSettings) -> Optional[Dict[str, Any]]:
        return self._show(["network", "lb", "show", "-g", context.resource_group, "--name", settings.lb_name])

    def _frontend_ip(self, lb: Dict[str, Any]) -> Optional[str]:
        configs = lb.get("frontendIPConfigurations") or lb.get("frontendIpConfigurations") or []
        return configs[0].get("privateIPAddress") if configs else None

    def check_lb_frontend(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "load_balancer_frontend"
        lb = self._load_balancer(context, settings)
        if not lb:
            return CheckResult(name, CheckStatus.FAILED, expected=settings.listener_ip, detail=f"{settings.lb_name} not found")

        frontend = self._frontend_ip(lb)
        status = CheckStatus.PASSED if frontend == settings.listener_ip else CheckStatus.FAILED
        return CheckResult(name, status, observed=frontend, expected=settings.listener_ip)

    def _named(self, items: List[Dict[str, Any]], item_name: str) -> Optional[Dict[str, Any]]:
        return next((item for item in items if item.get("name") == item_name), None)

    def check_lb_probe(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "load_balancer_probe"
        lb = self._load_balancer(context, settings)
        if not lb:
            return _inconclusive(name, "load balancer missing")

        probe = self._named(lb.get("probes") or [], PROBE_NAME)
        if not probe:
            return CheckResult(name, CheckStatus.FAILED, detail=f"probe {PROBE_NAME} not found")

        mismatches = _compare(probe, expected_probe(settings))
        return CheckResult(
            name,
            CheckStatus.FAILED if mismatches else CheckStatus.PASSED,
            observed=f"{probe.get('protocol')}:{probe.get('port')}",
            expected=f"Tcp:{settings.probe_port}",
            detail="; ".join(mismatches),
        )

    def check_lb_rule(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "load_balancer_rule"
        lb = self._load_balancer(context, settings)
        if not lb:
            return _inconclusive(name, "load balancer missing")

        rule = self._named(lb.get("loadBalancingRules") or [], RULE_NAME)
        if not rule:
            return CheckResult(name, CheckStatus.FAILED, detail=f"rule {RULE_NAME} not found")

        mismatches = _compare(rule, EXPECTED_RULE)
        probe_id = str((rule.get("probe") or {}).get("id", ""))
        if not probe_id.endswith(f"/probes/{PROBE_NAME}"):
            mismatches.append(f"probe={probe_id or None!r} (expected {PROBE_NAME!r})")

        return CheckResult(
            name,
            CheckStatus.FAILED if mismatches else CheckStatus.PASSED,
            observed=f"{rule.get('frontendPort')}->{rule.get('backendPort')} floatingIP={rule.get('enableFloatingIP')}",
            expected=f"{SQL_PORT}->{SQL_PORT} floatingIP=True",
            detail="; ".join(mismatches),
        )

    # Availability group

    def _primary_vm(self, context: DeploymentContext, settings: RunSettings) -> Optional[str]:
        key = ("primary-vm",)
        if key not in self._cache:
            self._cache[key] = self.remote_sql.primary_instance(context, settings.ag_name)
        return self._cache[key]

    def check_availability_group(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "availability_group"
        details = []
        if settings.ag_mode == "managed":
            group = self._show(["sql", "vm", "group", "show", "-g", context.resource_group, "--name", settings.ag_name])
            if not group:
                return CheckResult(name, CheckStatus.FAILED, expected=settings.ag_name, detail="SQL VM group not found")
            details.append(f"group={group.get('provisioningState')}")

        primary = self._primary_vm(context, settings)
        if primary is None:
            return CheckResult(
                name,
                CheckStatus.FAILED,
                expected=settings.ag_name,
                detail="; ".join(details + ["no instance reports the availability group"]),
            )
        return CheckResult(
            name,
            CheckStatus.PASSED,
            observed=f"{settings.ag_name} primary={primary}",
            expected=settings.ag_name,
            detail="; ".join(details),
        )

    def check_replica_health(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "replica_health"
        primary = self._primary_vm(context, settings)
        if primary is None:
            return _inconclusive(name, "availability group not found")

        replicas = self.remote_sql.replica_states(context, primary, settings.ag_name)
        roles = sorted(replica.role for replica in replicas)
        problems = []
        if roles != ["PRIMARY", "SECONDARY"]:
            problems.append(f"roles={roles}")
        for replica in replicas:
            if replica.availability_mode != "SYNCHRONOUS_COMMIT":
                problems.append(f"{replica.replica_server_name} mode={replica.availability_mode}")
            if not replica.is_healthy:
                problems.append(f"{replica.replica_server_name} health={replica.synchronization_health}")

        observed = ", ".join(
            f"{r.replica_server_name}={r.role}/{r.synchronization_health}" for r in replicas
        )
        return CheckResult(
            name,
            CheckStatus.FAILED if problems else CheckStatus.PASSED,
            observed=observed,
            expected="1 PRIMARY + 1 SECONDARY, SYNCHRONOUS_COMMIT, HEALTHY",
            detail="; ".join(problems),
        )

    def check_listener(self, context: DeploymentContext, settings: RunSettings) -> CheckResult:
        name = "listener"
        primary = self._primary_vm(context, settings)
        if primary is None:
            return _inconclusive(name, "availability group not found")

        listeners = self.remote_sql.listeners(context, primary, settings.ag_name)
        listener = next(
            (row for row in listeners if str(row.get("dns_name", "")).lower() == settings.listener_name.lower()),
            None,
        )
        if not listener:
            return CheckResult(name, CheckStatus.FAILED, expected=settings.listener_name, detail="listener not found")

        lb = self._load_balancer(context, settings)
        frontend = self._frontend_ip(lb) if lb else settings.listener_ip
        bound = str(listener.get("ip_address"))
        status = CheckStatus.PASSED if bound == frontend else CheckStatus.FAILED
        return CheckResult(
            name,
            status,
            observed=f"{listener.get('dns_name')}={bound}:{listener.get('port')}",
            expected=f"{settings.listener_name}={frontend}:{SQL_PORT}",
        )

    def check_listener_reachability(
        self, context: DeploymentContext, settings: RunSettings, timeout: float = 5.0
    ) -> CheckResult:
        name = "listener_reachability"
        target = f"{settings.listener_ip}:{SQL_PORT}"
        try:
            connection = self.connect((settings.listener_ip, SQL_PORT), timeout)
        except ConnectionRefusedError as exc:
            return CheckResult(name, CheckStatus.FAILED, observed="refused", expected=target, detail=str(exc))
        except OSError as exc:
            return CheckResult(
                name,
                CheckStatus.INCONCLUSIVE,
                observed="no route",
                expected=target,
                detail=f"listener not reachable from this host: {exc}",
            )
        connection.close()
        return CheckResult(name, CheckStatus.PASSED, observed="connected", expected=target)

    # Reporting

    @staticmethod
    def exit_code(results: List[CheckResult]) -> int:
        statuses = {result.status for result in results}
        if CheckStatus.FAILED in statuses:
            return 1
        if CheckStatus.INCONCLUSIVE in statuses:
            return 2
        return 0

    def render(self, results: List[CheckResult]) -> Table:
        table = Table(title="SQL HA validation")
        table.add_column("Check")
        table.add_column("Status")
        table.add_column("Observed")
        table.add_column("Expected")
        table.add_column("Detail")
        for result in results:
            table.add_row(
                result.name,
                STATUS_STYLES[result.status],
                result.observed or "",
                result.expected or "",
                result.detail,
            )
        return table

    def report(self, context: DeploymentContext, results: List[CheckResult]) -> Dict[str, Any]:
        counts = {status.value: 0 for status in CheckStatus}
        for result in results:
            counts[result.status.value] += 1
        return {
            "run_id": context.run_id,
            "resource_group": context.resource_group,
            "summary": counts,
            "exit_code": self.exit_code(results),
            "checks": [result.to_dict() for result in results],
        }
