import base64
import json

import pytest
import requests

from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import DeploymentContext, InstanceInfo, ReplicaState, RunSettings
from sqlhadeployer.services.cluster import ClusterService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class ImmediateWaiter:
    def __init__(self):
        self.calls = []

    def until(self, description, probe, policy, tolerate_errors=True):
        self.calls.append((description, tolerate_errors))
        return probe()


def verb(args):
    words = []
    for arg in args:
        if arg.startswith("-"):
            break
        words.append(arg)
    return " ".join(words)


class FakeAzureCli:
    def __init__(self, shows=None, responses=None):
        self.shows = shows or {}
        self.responses = responses or {}
        self.calls = []
        self.sensitive = []

    def show(self, args, sensitive=False):
        self.calls.append(("show", args, ()))
        if sensitive:
            self.sensitive.append(verb(args))
        value = self.shows.get(verb(args))
        return value(args) if callable(value) else value

    def az(self, args, retry=None, secrets=(), sensitive=False):
        self.calls.append(("az", args, tuple(secrets)))
        if sensitive:
            self.sensitive.append(verb(args))
        value = self.responses.get(verb(args))
        return value(args) if callable(value) else value

    def args_for(self, action):
        return [args for kind, args, _ in self.calls if kind == "az" and verb(args) == action]


class FakeRemoteSql:
    def __init__(self, replicas=None, primary="sqlvm1"):
        self.replicas = replicas or []
        self.primary = primary

    def replica_states(self, context, vm_name, ag_name):
        return self.replicas

    def primary_instance(self, context, ag_name):
        return self.primary


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")


class FakeRequests:
    RequestException = requests.RequestException

    def __init__(self, status_code=200):
        self.status_code = status_code
        self.heads = []

    def head(self, url, allow_redirects=True, timeout=None):
        self.heads.append(url)
        return FakeResponse(self.status_code)


def _context():
    return DeploymentContext.from_settings(RunSettings(run_id="a1b2c3d4"))


def _service(azure_cli, remote_sql=None, requests_module=None):
    return ClusterService(
        azure_cli,
        remote_sql or FakeRemoteSql(),
        ImmediateWaiter(),
        DummyLogger(),
        DummyConsole(),
        requests_module=requests_module or FakeRequests(),
    )


def _healthy(name, role):
    return ReplicaState(name, role, "SYNCHRONOUS_COMMIT", "MANUAL", "CONNECTED", "HEALTHY")


def windows_argv(command):
    """Splits a command line the way the Windows C runtime does for unescaped input."""
    args, current, quoted, pending = [], [], False, False
    for char in command:
        if char == '"':
            quoted = not quoted
            pending = True
        elif char in " \t" and not quoted:
            if current or pending:
                args.append("".join(current))
            current, pending = [], False
        else:
            current.append(char)
    if current or pending:
        args.append("".join(current))
    return args


def test_load_balancer_uses_listener_ip_as_static_frontend():
    azure_cli = FakeAzureCli()
    settings = RunSettings(run_id="a1b2c3d4", listener_ip="10.0.0.50")

    _service(azure_cli).ensure_load_balancer(_context(), settings)

    args = azure_cli.args_for("network lb create")[0]
    assert args[args.index("--private-ip-address") + 1] == "10.0.0.50"
    assert args[args.index("--sku") + 1] == "Standard"
    assert args[args.index("--frontend-ip-name") + 1] == "FrontendIP"
    assert args[args.index("--backend-pool-name") + 1] == "BackendPool"


def test_lb_rule_enables_floating_ip_and_disables_snat():
    azure_cli = FakeAzureCli()

    _service(azure_cli).ensure_lb_rule(_context(), RunSettings(run_id="a1b2c3d4"))

    args = azure_cli.args_for("network lb rule create")[0]
    assert args[args.index("--floating-ip") + 1] == "true"
    assert args[args.index("--disable-outbound-snat") + 1] == "true"
    assert args[args.index("--probe-name") + 1] == "SQLProbe"
    assert args[args.index("--frontend-port") + 1] == "1433"


def test_health_probe_skipped_when_present():
    azure_cli = FakeAzureCli(shows={"network lb probe show": {"name": "SQLProbe"}})

    _service(azure_cli).ensure_health_probe(_context(), RunSettings(run_id="a1b2c3d4"))

    assert azure_cli.args_for("network lb probe create") == []


def test_backend_pool_requires_existing_nic():
    azure_cli = FakeAzureCli(shows={"network nic show": None})

    with pytest.raises(DeployerError, match="sqlvm1-nic does not exist"):
        _service(azure_cli).add_to_backend_pool(_context(), RunSettings(run_id="a1b2c3d4"), "sqlvm1")

    assert azure_cli.args_for("network nic ip-config address-pool add") == []


def test_backend_pool_membership_is_added_after_nic_lookup():
    azure_cli = FakeAzureCli(shows={"network nic show": {"ipConfigurations": [{"name": "ipconfig1"}]}})

    _service(azure_cli).add_to_backend_pool(_context(), RunSettings(run_id="a1b2c3d4"), "sqlvm1")

    actions = [verb(args) for _, args, _ in azure_cli.calls]
    assert actions == ["network nic show", "network nic ip-config address-pool add"]
    args = azure_cli.args_for("network nic ip-config address-pool add")[0]
    assert args[args.index("--ip-config-name") + 1] == "ipconfig1"


def test_backend_pool_membership_is_idempotent():
    pool_id = "/subscriptions/s/resourceGroups/rg/providers/Microsoft.Network/loadBalancers/lb-sqlha/backendAddressPools/BackendPool"
    azure_cli = FakeAzureCli(
        shows={"network nic show": {"ipConfigurations": [{"loadBalancerBackendAddressPools": [{"id": pool_id}]}]}}
    )

    _service(azure_cli).add_to_backend_pool(_context(), RunSettings(run_id="a1b2c3d4"), "sqlvm1")

    assert azure_cli.args_for("network nic ip-config address-pool add") == []


def test_managed_group_adds_both_instances_and_masks_passwords():
    azure_cli = FakeAzureCli(
        shows={"sql vm group show": None, "storage account show": {"name": "st"}},
        responses={"storage account keys list": [{"value": "storage-key"}], "sql vm show": {}},
    )

    _service(azure_cli).create_managed_group(_context(), RunSettings(run_id="a1b2c3d4"), "sqladmin", "pw-123")

    group_args = azure_cli.args_for("sql vm group create")[0]
    assert group_args[group_args.index("--image-offer") + 1] == "SQL2019-WS2022"
    assert group_args[group_args.index("--image-sku") + 1] == "Standard"
    added = azure_cli.args_for("sql vm add-to-group")
    assert [args[args.index("--name") + 1] for args in added] == ["sqlvm1", "sqlvm2"]
    secrets = [s for kind, args, s in azure_cli.calls if verb(args) == "sql vm add-to-group"]
    assert all("pw-123" in item for item in secrets)
    assert all("--bootstrap-acc-pwd=pw-123" in args for args in added)
    assert "--sa-key=storage-key" in group_args


def test_verify_script_url_raises_when_blob_is_not_accessible():
    service = _service(FakeAzureCli(), requests_module=FakeRequests(status_code=404))

    with pytest.raises(DeployerError, match="not accessible"):
        service.verify_script_url("https://st.blob.core.windows.net/scripts/configure-sql-ag.ps1")


def test_upload_configure_script_returns_verified_url():
    url = "https://scriptrgsqlha.blob.core.windows.net/scripts/configure-sql-ag.ps1"
    fake_requests = FakeRequests()
    azure_cli = FakeAzureCli(
        shows={"storage account show": {"name": "script"}},
        responses={"storage account keys list": [{"value": "k"}], "storage blob url": url},
    )

    assert _service(azure_cli, requests_module=fake_requests).upload_configure_script(_context()) == url
    assert fake_requests.heads == [url]


def _instances():
    return [
        InstanceInfo("sqlvm1", "sqlvm1-nic", "10.0.0.4"),
        InstanceInfo("sqlvm2", "sqlvm2-nic", "10.0.0.5"),
    ]


def _subnet_cli():
    return FakeAzureCli(responses={"network vnet subnet show": {"id": "/subnet", "addressPrefix": "10.0.0.0/24"}})


def _pushed_command(azure_cli):
    args = azure_cli.args_for("vm extension set")[-1]
    return json.loads(args[args.index("--protected-settings") + 1])["commandToExecute"]


def test_push_configuration_targets_role_and_hides_password():
    azure_cli = _subnet_cli()

    _service(azure_cli).push_configuration(
        _context(), RunSettings(run_id="a1b2c3d4"), _instances(), "Secondary", "https://x/s.ps1", "sqladmin", "pw-123"
    )

    args = azure_cli.args_for("vm extension set")[0]
    assert args[args.index("--vm-name") + 1] == "sqlvm2"
    assert "pw-123" not in _pushed_command(azure_cli)
    secrets = [s for kind, a, s in azure_cli.calls if verb(a) == "vm extension set"][0]
    assert "pw-123" in secrets
    assert "vm extension set" in azure_cli.sensitive


def test_pushed_parameters_survive_windows_argument_splitting():
    azure_cli = _subnet_cli()
    settings = RunSettings(run_id="a1b2c3d4", ag_name="SQLAG", listener_name="sqlhagrp")
    password = "Ab1!x@y#z*w-q_e=r+t"

    _service(azure_cli).push_configuration(
        _context(), settings, _instances(), "Primary", "https://x/s.ps1", "sqladmin", password
    )

    argv = windows_argv(_pushed_command(azure_cli))
    assert argv[:5] == ["powershell", "-ExecutionPolicy", "Unrestricted", "-File", "configure-sql-ag.ps1"]
    assert argv[5] == "-Parameters"
    assert len(argv) == 7
    parameters = json.loads(base64.b64decode(argv[6]).decode("utf-8"))
    assert parameters["AGName"] == "SQLAG"
    assert parameters["ListenerName"] == "sqlhagrp"
    assert parameters["SqlAdminPassword"] == password
    assert parameters["Role"] == "Primary"
    assert parameters["SubnetMask"] == "255.255.255.0"
    assert parameters["PrimaryIP"] == "10.0.0.4"
    assert parameters["ProbePort"] == 59999


def test_push_configuration_blocks_and_forces_rerun_of_the_script():
    azure_cli = _subnet_cli()
    service = _service(azure_cli)

    for _ in range(2):
        service.push_configuration(
            _context(), RunSettings(run_id="a1b2c3d4"), _instances(), "Primary", "https://x/s.ps1", "sqladmin", "pw"
        )

    pushes = azure_cli.args_for("vm extension set")
    assert len(pushes) == 2
    assert all("--force-update" in args for args in pushes)
    assert all("--no-wait" not in args for args in pushes)


def test_storage_key_output_is_kept_out_of_logs():
    azure_cli = FakeAzureCli(responses={"storage account keys list": [{"value": "storage-key"}]})

    assert _service(azure_cli).storage_key(_context(), "stsqlha") == "storage-key"
    assert azure_cli.sensitive == ["storage account keys list"]


def test_wait_for_script_aborts_on_failed_extension():
    azure_cli = FakeAzureCli(shows={"vm extension show": {"provisioningState": "Failed"}})

    with pytest.raises(DeployerError, match="Configuration script on sqlvm1 failed"):
        _service(azure_cli).wait_for_script(_context(), RunSettings(run_id="a1b2c3d4"), "sqlvm1")


def test_wait_for_healthy_replicas_requires_two_healthy_replicas():
    remote_sql = FakeRemoteSql(replicas=[_healthy("sqlvm1", "PRIMARY"), _healthy("sqlvm2", "SECONDARY")])
    service = _service(FakeAzureCli(), remote_sql=remote_sql)

    service.wait_for_healthy_replicas(_context(), RunSettings(run_id="a1b2c3d4"), "sqlvm1")

    assert "HEALTHY" in service.waiter.calls[0][0]


def test_image_offer_and_sku_rejects_short_urn():
    with pytest.raises(DeployerError, match="publisher:offer:sku:version"):
        ClusterService._image_offer_and_sku("SQL2019")
