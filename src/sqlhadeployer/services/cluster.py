"""Load balancer, availability group and listener configuration."""

import ipaddress
import json
from typing import List, Optional

import requests

from sqlhadeployer.constants import (
    BACKEND_POOL_NAME,
    CONFIGURE_SCRIPT_NAME,
    CUSTOM_SCRIPT_EXTENSION,
    CUSTOM_SCRIPT_PUBLISHER,
    CUSTOM_SCRIPT_VERSION,
    FRONTEND_IP_NAME,
    NIC_IP_CONFIG_NAME,
    PROBE_NAME,
    RULE_NAME,
    SCRIPT_CONTAINER_NAME,
    SQL_PORT,
)
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.errors_catalog import actionable_error
from sqlhadeployer.models import DeploymentContext, InstanceInfo, RunSettings
from sqlhadeployer.services.sql_scripts import encode_configure_parameters, render_configure_script


class ClusterService:
    """Wires the two provisioned instances into a listener-fronted availability group.

    The order of the public methods is the required configuration order: each
    step references identifiers created by the previous one.
    """

    def __init__(self, azure_cli, remote_sql, waiter, logger, console, requests_module=requests):
        self.azure_cli = azure_cli
        self.remote_sql = remote_sql
        self.waiter = waiter
        self.logger = logger
        self.console = console
        self.requests = requests_module

    def _lb_args(self, context: DeploymentContext, settings: RunSettings) -> List[str]:
        return ["--resource-group", context.resource_group, "--lb-name", settings.lb_name]

    def ensure_load_balancer(self, context: DeploymentContext, settings: RunSettings):
        existing = self.azure_cli.show(
            ["network", "lb", "show", "-g", context.resource_group, "--name", settings.lb_name]
        )
        if existing:
            self.logger.info("Load balancer %s already exists, skipping.", settings.lb_name)
            return

        self.console.print("[blue]Creating internal load balancer...[/blue]")
        self.azure_cli.az(
            [
                "network",
                "lb",
                "create",
                "--name",
                settings.lb_name,
                "--resource-group",
                context.resource_group,
                "--sku",
                "Standard",
                "--vnet-name",
                context.vnet_name,
                "--subnet",
                context.subnet_name,
                "--frontend-ip-name",
                FRONTEND_IP_NAME,
                "--backend-pool-name",
                BACKEND_POOL_NAME,
                "--private-ip-address",
                settings.listener_ip,
            ]
        )

    def ensure_health_probe(self, context: DeploymentContext, settings: RunSettings):
        lb_args = self._lb_args(context, settings)
        if self.azure_cli.show(["network", "lb", "probe", "show"] + lb_args + ["--name", PROBE_NAME]):
            self.logger.info("Health probe %s already exists, skipping.", PROBE_NAME)
            return

        self.console.print(f"[blue]Creating health probe on port {settings.probe_port}...[/blue]")
        self.azure_cli.az(
            ["network", "lb", "probe", "create"]
            + lb_args
            + ["--name", PROBE_NAME, "--protocol", "tcp", "--port", str(settings.probe_port)]
        )

    def ensure_lb_rule(self, context: DeploymentContext, settings: RunSettings):
        lb_args = self._lb_args(context, settings)
        if self.azure_cli.show(["network", "lb", "rule", "show"] + lb_args + ["--name", RULE_NAME]):
            self.logger.info("Load balancing rule %s already exists, skipping.", RULE_NAME)
            return

        self.console.print("[blue]Creating load balancing rule with floating IP...[/blue]")
        self.azure_cli.az(
            ["network", "lb", "rule", "create"]
            + lb_args
            + [
                "--name",
                RULE_NAME,
                "--protocol",
                "tcp",
                "--frontend-port",
                str(SQL_PORT),
                "--backend-port",
                str(SQL_PORT),
                "--frontend-ip-name",
                FRONTEND_IP_NAME,
                "--backend-pool-name",
                BACKEND_POOL_NAME,
                "--probe-name",
                PROBE_NAME,
                "--floating-ip",
                "true",
                "--disable-outbound-snat",
                "true",
            ]
        )

    def add_to_backend_pool(
        self, context: DeploymentContext, settings: RunSettings, vm_name: str
    ):
        nic_name = context.nic_name(vm_name)
        nic = self.azure_cli.show(
            ["network", "nic", "show", "-g", context.resource_group, "--name", nic_name]
        )
        if nic is None:
            raise DeployerError(
                actionable_error("nic_missing", nic=nic_name, resource_group=context.resource_group)
            )

        for ip_config in nic.get("ipConfigurations") or []:
            for pool in ip_config.get("loadBalancerBackendAddressPools") or []:
                pool_id = str(pool.get("id", ""))
                if pool_id.endswith(f"/{settings.lb_name}/backendAddressPools/{BACKEND_POOL_NAME}"):
                    self.logger.info("%s is already in the backend pool, skipping.", nic_name)
                    return

        self.logger.info("Adding %s to backend pool %s", nic_name, BACKEND_POOL_NAME)
        self.azure_cli.az(
            [
                "network",
                "nic",
                "ip-config",
                "address-pool",
                "add",
                "--resource-group",
                context.resource_group,
                "--nic-name",
                nic_name,
                "--ip-config-name",
                NIC_IP_CONFIG_NAME,
                "--lb-name",
                settings.lb_name,
                "--address-pool",
                BACKEND_POOL_NAME,
            ]
        )

    def ensure_storage_account(self, context: DeploymentContext, purpose: str) -> str:
        name = context.storage_account_name(purpose)
        existing = self.azure_cli.show(
            ["storage", "account", "show", "-g", context.resource_group, "--name", name]
        )
        if not existing:
            self.console.print(f"[blue]Creating storage account {name}...[/blue]")
            self.azure_cli.az(
                [
                    "storage",
                    "account",
                    "create",
                    "--name",
                    name,
                    "--resource-group",
                    context.resource_group,
                    "--location",
                    context.location,
                    "--sku",
                    "Standard_LRS",
                    "--kind",
                    "StorageV2",
                ]
            )
        return name

    def storage_key(self, context: DeploymentContext, account_name: str) -> str:
        keys = self.azure_cli.az(
            [
                "storage",
                "account",
                "keys",
                "list",
                "--resource-group",
                context.resource_group,
                "--account-name",
                account_name,
            ],
            sensitive=True,
        )
        if not keys:
            raise DeployerError(f"No access keys returned for storage account {account_name}.")
        return str(keys[0]["value"])

    def create_managed_group(
        self,
        context: DeploymentContext,
        settings: RunSettings,
        admin_username: str,
        admin_password: str,
    ):
        rg = context.resource_group
        existing = self.azure_cli.show(["sql", "vm", "group", "show", "-g", rg, "--name", settings.ag_name])
        if not existing:
            account = self.ensure_storage_account(context, "st")
            key = self.waiter.until(
                f"access keys of storage account {account}",
                lambda: self.storage_key(context, account),
                settings.wait_policy,
            )
            offer, sku = self._image_offer_and_sku(settings.image)
            self.console.print(f"[blue]Creating SQL VM group {settings.ag_name}...[/blue]")
            self.azure_cli.az(
                [
                    "sql",
                    "vm",
                    "group",
                    "create",
                    "--name",
                    settings.ag_name,
                    "--resource-group",
                    rg,
                    "--location",
                    context.location,
                    "--image-offer",
                    offer,
                    "--image-sku",
                    sku,
                    "--domain-fqdn",
                    "WORKGROUP",
                    "--operator-acc",
                    admin_username,
                    "--service-acc",
                    admin_username,
                    f"--sa-key={key}",
                    "--storage-account",
                    f"https://{account}.blob.core.windows.net/",
                ],
                secrets=(key,),
            )

        for vm_name in context.instance_names():
            registration = self.azure_cli.az(["sql", "vm", "show", "-g", rg, "--name", vm_name])
            group_id = str((registration or {}).get("sqlVirtualMachineGroupResourceId") or "")
            if group_id.endswith(f"/{settings.ag_name}"):
                self.logger.info("%s is already in group %s, skipping.", vm_name, settings.ag_name)
                continue

            self.logger.info("Adding %s to group %s", vm_name, settings.ag_name)
            self.azure_cli.az(
                [
                    "sql",
                    "vm",
                    "add-to-group",
                    "--name",
                    vm_name,
                    "--resource-group",
                    rg,
                    "--sqlvm-group",
                    settings.ag_name,
                    f"--bootstrap-acc-pwd={admin_password}",
                    f"--operator-acc-pwd={admin_password}",
                    f"--service-acc-pwd={admin_password}",
                ],
                secrets=(admin_password,),
            )

    def create_managed_listener(self, context: DeploymentContext, settings: RunSettings):
        rg = context.resource_group
        existing = self.azure_cli.show(
            [
                "sql",
                "vm",
                "group",
                "ag-listener",
                "show",
                "-g",
                rg,
                "--group-name",
                settings.ag_name,
                "--name",
                settings.listener_name,
            ]
        )
        if existing:
            self.logger.info("Listener %s already exists, skipping.", settings.listener_name)
            return

        self.console.print(f"[blue]Creating listener {settings.listener_name}...[/blue]")
        subnet_id = self._subnet_id(context)
        lb_id = self.azure_cli.az(["network", "lb", "show", "-g", rg, "--name", settings.lb_name])["id"]
        self.azure_cli.az(
            [
                "sql",
                "vm",
                "group",
                "ag-listener",
                "create",
                "--resource-group",
                rg,
                "--group-name",
                settings.ag_name,
                "--ag-name",
                settings.ag_name,
                "--name",
                settings.listener_name,
                "--ip-address",
                settings.listener_ip,
                "--load-balancer",
                lb_id,
                "--probe-port",
                str(settings.probe_port),
                "--subnet",
                subnet_id,
                "--port",
                str(SQL_PORT),
                "--sqlvms",
            ]
            + context.instance_names()
        )

    def upload_configure_script(self, context: DeploymentContext) -> str:
        account = self.ensure_storage_account(context, "script")
        key = self.storage_key(context, account)
        auth = ["--account-name", account, "--account-key", key]

        self.azure_cli.az(
            ["storage", "container", "create", "--name", SCRIPT_CONTAINER_NAME, "--public-access", "blob"]
            + auth,
            secrets=(key,),
        )
        self.azure_cli.az(
            [
                "storage",
                "blob",
                "upload",
                "--container-name",
                SCRIPT_CONTAINER_NAME,
                "--name",
                CONFIGURE_SCRIPT_NAME,
                "--data",
                render_configure_script(),
                "--overwrite",
            ]
            + auth,
            secrets=(key,),
        )
        script_url = self.azure_cli.az(
            ["storage", "blob", "url", "--container-name", SCRIPT_CONTAINER_NAME, "--name", CONFIGURE_SCRIPT_NAME]
            + auth,
            secrets=(key,),
        )
        script_url = str(script_url)
        self.verify_script_url(script_url)
        self.logger.info("Configuration script uploaded to %s", script_url)
        return script_url

    def verify_script_url(self, script_url: str, timeout: float = 30.0):
        try:
            response = self.requests.head(script_url, allow_redirects=True, timeout=timeout)
            response.raise_for_status()
        except self.requests.RequestException as exc:
            raise DeployerError(f"Uploaded script is not accessible at {script_url}: {exc}") from exc

    def push_configuration(
        self,
        context: DeploymentContext,
        settings: RunSettings,
        instances: List[InstanceInfo],
        role: str,
        script_url: str,
        admin_username: str,
        admin_password: str,
    ):
        primary, secondary = instances
        target = primary if role == "Primary" else secondary
        mask = str(ipaddress.ip_network(self._subnet_prefix(context), strict=False).netmask)
        parameters = encode_configure_parameters(
            {
                "Role": role,
                "PrimaryServer": primary.name,
                "SecondaryServer": secondary.name,
                "PrimaryIP": primary.private_ip,
                "SecondaryIP": secondary.private_ip,
                "ListenerIP": settings.listener_ip,
                "SubnetMask": mask,
                "SqlAdminUser": admin_username,
                "SqlAdminPassword": admin_password,
                "AGName": settings.ag_name,
                "ListenerName": settings.listener_name,
                "ProbePort": settings.probe_port,
            }
        )
        command = (
            f"powershell -ExecutionPolicy Unrestricted -File {CONFIGURE_SCRIPT_NAME} -Parameters {parameters}"
        )
        self.console.print(f"[blue]Deploying configuration script to {target.name} ({role})...[/blue]")
        self.azure_cli.az(
            [
                "vm",
                "extension",
                "set",
                "--resource-group",
                context.resource_group,
                "--vm-name",
                target.name,
                "--name",
                CUSTOM_SCRIPT_EXTENSION,
                "--publisher",
                CUSTOM_SCRIPT_PUBLISHER,
                "--version",
                CUSTOM_SCRIPT_VERSION,
                "--settings",
                json.dumps({"fileUris": [script_url]}),
                "--protected-settings",
                json.dumps({"commandToExecute": command}),
                "--force-update",
            ],
            secrets=(admin_password, parameters),
            sensitive=True,
        )

    def wait_for_script(self, context: DeploymentContext, settings: RunSettings, vm_name: str):
        def script_finished() -> bool:
            extension = self.azure_cli.show(
                [
                    "vm",
                    "extension",
                    "show",
                    "--resource-group",
                    context.resource_group,
                    "--vm-name",
                    vm_name,
                    "--name",
                    CUSTOM_SCRIPT_EXTENSION,
                ]
            )
            state = (extension or {}).get("provisioningState")
            if state == "Failed":
                raise DeployerError(f"Configuration script on {vm_name} failed.")
            return state == "Succeeded"

        self.waiter.until(
            f"configuration script on {vm_name}",
            script_finished,
            settings.wait_policy,
            tolerate_errors=False,
        )

    def wait_for_healthy_replicas(
        self, context: DeploymentContext, settings: RunSettings, primary_vm: str
    ):
        def replicas_healthy() -> bool:
            replicas = self.remote_sql.replica_states(context, primary_vm, settings.ag_name)
            return len(replicas) == 2 and all(replica.is_healthy for replica in replicas)

        self.waiter.until(
            f"replicas of {settings.ag_name} to report HEALTHY",
            replicas_healthy,
            settings.wait_policy,
        )

    def primary_vm(self, context: DeploymentContext, settings: RunSettings) -> Optional[str]:
        return self.remote_sql.primary_instance(context, settings.ag_name)

    def _subnet(self, context: DeploymentContext) -> dict:
        return self.azure_cli.az(
            [
                "network",
                "vnet",
                "subnet",
                "show",
                "--resource-group",
                context.resource_group,
                "--vnet-name",
                context.vnet_name,
                "--name",
                context.subnet_name,
            ]
        )

    def _subnet_id(self, context: DeploymentContext) -> str:
        return str(self._subnet(context)["id"])

    def _subnet_prefix(self, context: DeploymentContext) -> str:
        return str(self._subnet(context)["addressPrefix"])

    @staticmethod
    def _image_offer_and_sku(image: str):
        parts = image.split(":")
        if len(parts) < 3:
            raise DeployerError(f"Image '{image}' must be publisher:offer:sku:version.")
        return parts[1], parts[2]
