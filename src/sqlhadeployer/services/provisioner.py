"""Infrastructure provisioning: network, placement, instances, disks and registration."""

from typing import Any, Dict, List, Optional

from sqlhadeployer.constants import FAULT_DOMAIN_COUNT, SECURITY_RULES, UPDATE_DOMAIN_COUNT
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.errors_catalog import actionable_error
from sqlhadeployer.models import DeploymentContext, InstanceInfo, RunSettings


class ProvisionerService:
    """Creates every Azure resource of the two-node deployment.

    Each ``ensure_*`` call looks the resource up first and only creates it when
    Azure reports it missing, so a re-run after success creates nothing.
    """

    def __init__(self, azure_cli, waiter, logger, console):
        self.azure_cli = azure_cli
        self.waiter = waiter
        self.logger = logger
        self.console = console

    def _exists(self, args: List[str]) -> Optional[Any]:
        return self.azure_cli.show(args)

    def _skip(self, kind: str, name: str):
        self.logger.info("%s %s already exists, skipping.", kind, name)

    def ensure_resource_group(self, context: DeploymentContext):
        exists = self.azure_cli.az(["group", "exists", "--name", context.resource_group])
        if exists:
            self._skip("Resource group", context.resource_group)
            return

        self.console.print(f"[blue]Creating resource group {context.resource_group}...[/blue]")
        self.azure_cli.az(
            [
                "group",
                "create",
                "--name",
                context.resource_group,
                "--location",
                context.location,
                "--tags",
                f"sqlha-run-id={context.run_id}",
            ]
        )

    def ensure_network(self, context: DeploymentContext, settings: RunSettings):
        rg = context.resource_group
        if self._exists(["network", "vnet", "show", "-g", rg, "--name", context.vnet_name]):
            self._skip("Virtual network", context.vnet_name)
        else:
            self.console.print("[blue]Creating virtual network and subnet...[/blue]")
            self.azure_cli.az(
                [
                    "network",
                    "vnet",
                    "create",
                    "--name",
                    context.vnet_name,
                    "--resource-group",
                    rg,
                    "--location",
                    context.location,
                    "--address-prefix",
                    settings.address_prefix,
                    "--subnet-name",
                    context.subnet_name,
                    "--subnet-prefix",
                    settings.subnet_prefix,
                ]
            )

        if self._exists(["network", "nsg", "show", "-g", rg, "--name", context.nsg_name]):
            self._skip("Network security group", context.nsg_name)
        else:
            self.console.print("[blue]Creating network security group...[/blue]")
            self.azure_cli.az(
                [
                    "network",
                    "nsg",
                    "create",
                    "--resource-group",
                    rg,
                    "--name",
                    context.nsg_name,
                    "--location",
                    context.location,
                ]
            )

    def ensure_security_rules(self, context: DeploymentContext):
        for rule_name, priority, port, description in SECURITY_RULES:
            existing = self._exists(
                [
                    "network",
                    "nsg",
                    "rule",
                    "show",
                    "-g",
                    context.resource_group,
                    "--nsg-name",
                    context.nsg_name,
                    "--name",
                    rule_name,
                ]
            )
            if existing:
                self._skip("NSG rule", rule_name)
                continue

            self.logger.info("Creating NSG rule %s for port %s", rule_name, port)
            self.azure_cli.az(
                [
                    "network",
                    "nsg",
                    "rule",
                    "create",
                    "--resource-group",
                    context.resource_group,
                    "--nsg-name",
                    context.nsg_name,
                    "--name",
                    rule_name,
                    "--priority",
                    str(priority),
                    "--destination-port-ranges",
                    str(port),
                    "--protocol",
                    "Tcp",
                    "--access",
                    "Allow",
                    "--source-address-prefixes",
                    "*",
                    "--destination-address-prefixes",
                    "*",
                    "--description",
                    description,
                ]
            )

    def ensure_availability_set(self, context: DeploymentContext):
        show_args = ["vm", "availability-set", "show", "-g", context.resource_group]
        if self._exists(show_args + ["--name", context.avset_name]):
            self._skip("Availability set", context.avset_name)
            return

        self.console.print("[blue]Creating availability set...[/blue]")
        self.azure_cli.az(
            [
                "vm",
                "availability-set",
                "create",
                "--name",
                context.avset_name,
                "--resource-group",
                context.resource_group,
                "--location",
                context.location,
                "--platform-fault-domain-count",
                str(FAULT_DOMAIN_COUNT),
                "--platform-update-domain-count",
                str(UPDATE_DOMAIN_COUNT),
            ]
        )

    def ensure_instance(
        self,
        context: DeploymentContext,
        settings: RunSettings,
        vm_name: str,
        admin_username: str,
        admin_password: str,
    ) -> InstanceInfo:
        rg = context.resource_group
        ip_name = context.public_ip_name(vm_name)
        nic_name = context.nic_name(vm_name)

        if not self._exists(["network", "public-ip", "show", "-g", rg, "--name", ip_name]):
            self.azure_cli.az(
                [
                    "network",
                    "public-ip",
                    "create",
                    "--resource-group",
                    rg,
                    "--name",
                    ip_name,
                    "--sku",
                    "Standard",
                    "--allocation-method",
                    "Static",
                    "--version",
                    "IPv4",
                ]
            )

        if not self._exists(["network", "nic", "show", "-g", rg, "--name", nic_name]):
            self.azure_cli.az(
                [
                    "network",
                    "nic",
                    "create",
                    "--resource-group",
                    rg,
                    "--name",
                    nic_name,
                    "--vnet-name",
                    context.vnet_name,
                    "--subnet",
                    context.subnet_name,
                    "--network-security-group",
                    context.nsg_name,
                    "--public-ip-address",
                    ip_name,
                ]
            )

        if self._exists(["vm", "show", "-g", rg, "--name", vm_name]):
            self._skip("VM", vm_name)
        else:
            os_disk = settings.disk("os")
            self.console.print(f"[blue]Creating VM {vm_name}...[/blue]")
            self.azure_cli.az(
                [
                    "vm",
                    "create",
                    "--resource-group",
                    rg,
                    "--name",
                    vm_name,
                    "--location",
                    context.location,
                    "--nics",
                    nic_name,
                    "--image",
                    settings.image,
                    "--admin-username",
                    admin_username,
                    f"--admin-password={admin_password}",
                    "--availability-set",
                    context.avset_name,
                    "--size",
                    settings.vm_size,
                    "--storage-sku",
                    os_disk.sku,
                    "--os-disk-name",
                    context.disk_name(vm_name, "os"),
                    "--os-disk-size-gb",
                    str(os_disk.size_gb),
                    "--os-disk-caching",
                    os_disk.caching,
                ],
                secrets=(admin_password,),
            )

        return self.describe_instance(context, vm_name)

    def describe_instance(self, context: DeploymentContext, vm_name: str) -> InstanceInfo:
        details = self.azure_cli.az(
            ["vm", "show", "--show-details", "-g", context.resource_group, "--name", vm_name]
        )
        return InstanceInfo(
            name=vm_name,
            nic_name=context.nic_name(vm_name),
            private_ip=(details or {}).get("privateIps") or None,
            public_ip=(details or {}).get("publicIps") or None,
        )

    def attach_disks(self, context: DeploymentContext, settings: RunSettings, vm_name: str):
        vm = self.azure_cli.az(["vm", "show", "-g", context.resource_group, "--name", vm_name])
        attached = {
            disk.get("name")
            for disk in ((vm or {}).get("storageProfile") or {}).get("dataDisks") or []
        }

        for spec in settings.data_disks():
            disk_name = context.disk_name(vm_name, spec.role)
            if disk_name in attached:
                self._skip("Disk", disk_name)
                continue

            if not self._exists(["disk", "show", "-g", context.resource_group, "--name", disk_name]):
                self.azure_cli.az(
                    [
                        "disk",
                        "create",
                        "--resource-group",
                        context.resource_group,
                        "--name",
                        disk_name,
                        "--size-gb",
                        str(spec.size_gb),
                        "--sku",
                        spec.sku,
                        "--location",
                        context.location,
                    ]
                )

            attach_args = [
                "vm",
                "disk",
                "attach",
                "--resource-group",
                context.resource_group,
                "--vm-name",
                vm_name,
                "--name",
                disk_name,
                "--caching",
                spec.caching,
            ]
            if spec.lun is not None:
                attach_args += ["--lun", str(spec.lun)]
            self.logger.info("Attaching %s disk %s to %s", spec.role, disk_name, vm_name)
            self.azure_cli.az(attach_args)

    def register_instance(self, context: DeploymentContext, settings: RunSettings, vm_name: str):
        rg = context.resource_group
        registration = self._exists(["sql", "vm", "show", "-g", rg, "--name", vm_name])
        if registration and registration.get("provisioningState") == "Succeeded":
            self._skip("SQL IaaS registration for", vm_name)
            return

        if registration is None:
            self.console.print(f"[blue]Registering {vm_name} with the SQL IaaS agent...[/blue]")
            policy = settings.registration_retry
            try:
                self.azure_cli.az(
                    [
                        "sql",
                        "vm",
                        "create",
                        "--name",
                        vm_name,
                        "--resource-group",
                        rg,
                        "--location",
                        context.location,
                        "--license-type",
                        settings.license_type,
                        "--sql-mgmt-type",
                        "Full",
                        "--enable-auto-patching",
                        "--day-of-week",
                        "Sunday",
                        "--maintenance-window-duration",
                        "60",
                        "--maintenance-window-starting-hour",
                        "2",
                    ],
                    retry=policy,
                )
            except DeployerError as exc:
                raise DeployerError(
                    actionable_error(
                        "registration_failed",
                        vm=vm_name,
                        attempts=str(policy.max_attempts),
                    )
                    + f"\n{exc}"
                ) from exc

        def registration_succeeded():
            state = self._exists(["sql", "vm", "show", "-g", rg, "--name", vm_name])
            if state and state.get("provisioningState") == "Failed":
                raise DeployerError(f"SQL IaaS registration for {vm_name} reports Failed.")
            return bool(state) and state.get("provisioningState") == "Succeeded"

        self.waiter.until(
            f"SQL IaaS registration of {vm_name}",
            registration_succeeded,
            settings.wait_policy,
            tolerate_errors=False,
        )

    def summary(self, context: DeploymentContext, instances: List[InstanceInfo]) -> Dict[str, Any]:
        return {
            "resource_group": context.resource_group,
            "key_vault": context.key_vault_name,
            "instances": [
                {"name": item.name, "private_ip": item.private_ip, "public_ip": item.public_ip}
                for item in instances
            ],
        }
