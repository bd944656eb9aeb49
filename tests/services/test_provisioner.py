import pytest

from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import DeploymentContext, RunSettings
from sqlhadeployer.services.provisioner import ProvisionerService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class ImmediateWaiter:
    def until(self, description, probe, policy, tolerate_errors=True):
        return probe()


def verb(args):
    words = []
    for arg in args:
        if arg.startswith("-"):
            break
        words.append(arg)
    return " ".join(words)


class FakeAzure:
    """Remembers what was created so `show` finds it on the next pass."""

    def __init__(self):
        self.resources = {}
        self.calls = []

    @staticmethod
    def _key(args):
        kind = " ".join(verb(args).split()[:-1])
        return kind, args[args.index("--name") + 1]

    def show(self, args):
        self.calls.append(("show", args, None))
        return self.resources.get(self._key(args))

    def az(self, args, retry=None, secrets=()):
        self.calls.append(("az", args, retry))
        action = verb(args)
        if action == "group exists":
            return ("group", args[args.index("--name") + 1]) in self.resources
        if action == "vm show":
            return self.resources.get(self._key(args))
        if action == "vm disk attach":
            vm = self.resources[("vm", args[args.index("--vm-name") + 1])]
            vm["storageProfile"]["dataDisks"].append({"name": args[args.index("--name") + 1]})
            return None
        if action.endswith(" create"):
            resource = {"name": args[args.index("--name") + 1], "provisioningState": "Succeeded"}
            if action == "vm create":
                resource.update({"storageProfile": {"dataDisks": []}, "privateIps": "10.0.0.4", "publicIps": "20.1.1.1"})
            self.resources[self._key(args)] = resource
            return resource
        return None

    def creates(self):
        return [verb(args) for kind, args, _ in self.calls if kind == "az" and verb(args).endswith(" create")]


def _provision(service, context, settings):
    service.ensure_resource_group(context)
    service.ensure_network(context, settings)
    service.ensure_security_rules(context)
    service.ensure_availability_set(context)
    for vm_name in context.instance_names():
        service.ensure_instance(context, settings, vm_name, "sqladmin", "P@ssw0rd-123456")
        service.attach_disks(context, settings, vm_name)
        service.register_instance(context, settings, vm_name)


def _setup():
    azure = FakeAzure()
    settings = RunSettings(run_id="a1b2c3d4")
    context = DeploymentContext.from_settings(settings)
    service = ProvisionerService(azure, ImmediateWaiter(), DummyLogger(), DummyConsole())
    return azure, settings, context, service


def test_provision_creates_every_resource_once():
    azure, settings, context, service = _setup()

    _provision(service, context, settings)

    creates = azure.creates()
    assert creates.count("group create") == 1
    assert creates.count("network nsg rule create") == 3
    assert creates.count("vm create") == 2
    assert creates.count("disk create") == 6
    assert creates.count("sql vm create") == 2


def test_rerun_after_success_creates_nothing():
    azure, settings, context, service = _setup()
    _provision(service, context, settings)
    azure.calls.clear()

    _provision(service, context, settings)

    assert azure.creates() == []
    assert not [args for kind, args, _ in azure.calls if verb(args) == "vm disk attach"]


def test_availability_set_uses_two_fault_and_five_update_domains():
    azure, _, context, service = _setup()

    service.ensure_availability_set(context)

    args = [args for kind, args, _ in azure.calls if verb(args) == "vm availability-set create"][0]
    assert args[args.index("--platform-fault-domain-count") + 1] == "2"
    assert args[args.index("--platform-update-domain-count") + 1] == "5"


def test_disks_are_attached_with_role_caching_and_lun():
    azure, settings, context, service = _setup()
    service.ensure_instance(context, settings, "sqlvm1", "sqladmin", "pw")

    service.attach_disks(context, settings, "sqlvm1")

    attaches = [args for kind, args, _ in azure.calls if verb(args) == "vm disk attach"]
    layout = {
        args[args.index("--name") + 1]: (args[args.index("--caching") + 1], args[args.index("--lun") + 1])
        for args in attaches
    }
    assert layout == {
        "sqlvm1-data-disk": ("ReadOnly", "0"),
        "sqlvm1-log-disk": ("None", "1"),
        "sqlvm1-temp-disk": ("ReadOnly", "2"),
    }


def test_vm_create_masks_admin_password_and_uses_premium_os_disk():
    azure, settings, context, service = _setup()
    secrets_seen = []
    original_az = azure.az

    def recording_az(args, retry=None, secrets=()):
        if verb(args) == "vm create":
            secrets_seen.extend(secrets)
        return original_az(args, retry=retry, secrets=secrets)

    azure.az = recording_az

    info = service.ensure_instance(context, settings, "sqlvm1", "sqladmin", "P@ssw0rd-123456")

    vm_args = [args for kind, args, _ in azure.calls if verb(args) == "vm create"][0]
    assert vm_args[vm_args.index("--storage-sku") + 1] == "Premium_LRS"
    assert vm_args[vm_args.index("--availability-set") + 1] == context.avset_name
    assert secrets_seen == ["P@ssw0rd-123456"]
    assert info.private_ip == "10.0.0.4"


def test_registration_uses_registration_retry_policy():
    azure, settings, context, service = _setup()

    service.register_instance(context, settings, "sqlvm1")

    retry = [retry for kind, args, retry in azure.calls if verb(args) == "sql vm create"][0]
    assert retry.max_attempts == 3
    assert retry.backoff_seconds == 30.0


def test_registration_failure_is_actionable():
    azure, settings, context, service = _setup()
    original_az = azure.az

    def failing_az(args, retry=None, secrets=()):
        if verb(args) == "sql vm create":
            raise DeployerError("Command failed (1): az sql vm create")
        return original_az(args, retry=retry, secrets=secrets)

    azure.az = failing_az

    with pytest.raises(DeployerError, match="failed after 3 attempt"):
        service.register_instance(context, settings, "sqlvm1")


def test_registration_aborts_when_provisioning_state_is_failed():
    azure, settings, context, service = _setup()
    azure.resources[("sql vm", "sqlvm1")] = {"name": "sqlvm1", "provisioningState": "Failed"}

    with pytest.raises(DeployerError, match="reports Failed"):
        service.register_instance(context, settings, "sqlvm1")
