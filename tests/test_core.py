import json

import pytest

from sqlhadeployer.core import SqlHaDeployer, build_settings
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import CheckResult, CheckStatus, DeploymentContext, InstanceInfo, RunSettings
from sqlhadeployer.services.handoff import HandoffService


class Recorder:
    """Stands in for a service and records every method called on it."""

    def __init__(self, name, calls, returns=None):
        self._name = name
        self._calls = calls
        self._returns = returns or {}

    def __getattr__(self, attr):
        def method(*args, **kwargs):
            self._calls.append(f"{self._name}.{attr}")
            value = self._returns.get(attr)
            return value(*args, **kwargs) if callable(value) else value

        return method


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def _instance(context, vm_name):
    return InstanceInfo(vm_name, f"{vm_name}-nic", "10.0.0.4", "20.0.0.4")


def build_deployer(tmp_path, stage, calls, settings=None, **kwargs):
    deployer = SqlHaDeployer(
        settings=settings or RunSettings(run_id="a1b2c3d4"),
        stage=stage,
        handoff_file=str(tmp_path / "deployment-variables.sh"),
        state_file=str(tmp_path / "state.json"),
        manifest_file=str(tmp_path / "manifest.json"),
        report_file=str(tmp_path / "report.json"),
        **kwargs,
    )
    deployer.azure_cli = Recorder("azure_cli", calls, {"validate_environment": "sub-123"})
    deployer.provisioner_service = Recorder(
        "provisioner",
        calls,
        {"describe_instance": _instance, "summary": lambda context, instances: {"instances": []}},
    )
    deployer.credential_service = Recorder(
        "credentials",
        calls,
        {"ensure_key_vault": "/vaults/kv", "read_credentials": ("sqladmin", "pw-123")},
    )
    deployer.cluster_service = Recorder(
        "cluster",
        calls,
        {"primary_vm": "sqlvm1", "upload_configure_script": "https://st.blob.core.windows.net/scripts/s.ps1"},
    )
    deployer.failover_service = Recorder(
        "failover", calls, {"planned": {"mode": "planned", "primary": "sqlvm2"}}
    )
    return deployer


def _raise(message):
    def callback(*_args, **_kwargs):
        raise DeployerError(message)

    return callback


def _write_handoff(tmp_path):
    context = DeploymentContext.from_settings(RunSettings(run_id="a1b2c3d4"))
    HandoffService(str(tmp_path / "deployment-variables.sh"), DummyLogger()).write(context)
    return context


def test_provision_runs_steps_in_dependency_order(tmp_path):
    calls = []
    deployer = build_deployer(tmp_path, "provision", calls)

    assert deployer.run() == 0

    assert calls.index("credentials.wait_for_secret_access") < calls.index("credentials.store_credentials")
    assert calls.index("credentials.store_credentials") < calls.index("provisioner.ensure_instance")
    assert calls.count("provisioner.ensure_instance") == 2
    assert calls.count("provisioner.register_instance") == 2
    assert HandoffService(str(tmp_path / "deployment-variables.sh"), DummyLogger()).read().run_id == "a1b2c3d4"

    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "success"
    assert manifest["artifacts"]["handoff_file"].endswith("deployment-variables.sh")


def test_provision_reuses_stored_credentials(tmp_path):
    calls = []
    deployer = build_deployer(tmp_path, "provision", calls)
    deployer.credential_service = Recorder(
        "credentials", calls, {"ensure_key_vault": "/vaults/kv", "existing_credentials": ("sqladmin", "old-pw")}
    )

    assert deployer.run() == 0
    assert "credentials.store_credentials" not in calls


def test_provision_resume_skips_completed_steps(tmp_path):
    calls = []
    deployer = build_deployer(tmp_path, "provision", calls, resume=True)

    def register(context, settings, vm_name):
        if vm_name == "sqlvm2":
            raise DeployerError("registration failed")

    deployer.provisioner_service = Recorder(
        "provisioner",
        calls,
        {"register_instance": register, "describe_instance": _instance, "summary": lambda c, i: {"instances": []}},
    )
    assert deployer.run() == 1

    state = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert "register_instance_sqlvm1" in state["completed_steps"]
    assert state["status"] == "failed"

    calls.clear()
    resumed = build_deployer(tmp_path, "provision", calls, resume=True)

    assert resumed.run() == 0
    assert "provisioner.ensure_resource_group" not in calls
    assert calls.count("provisioner.register_instance") == 1


def test_resume_adopts_run_id_from_state_when_not_given(tmp_path):
    calls = []
    first = build_deployer(tmp_path, "provision", calls, resume=True)
    first.provisioner_service = Recorder(
        "provisioner", calls, {"ensure_network": _raise("quota exceeded")}
    )
    assert first.run() == 1

    second = build_deployer(
        tmp_path, "provision", calls, settings=RunSettings(run_id="ffff0000"), resume=True, run_id_explicit=False
    )

    assert second.run() == 0
    assert second.settings.run_id == "a1b2c3d4"


def test_configure_managed_mode_order(tmp_path):
    _write_handoff(tmp_path)
    calls = []
    deployer = build_deployer(tmp_path, "configure", calls)

    assert deployer.run() == 0

    cluster_calls = [call for call in calls if call.startswith("cluster.")]
    assert cluster_calls == [
        "cluster.ensure_load_balancer",
        "cluster.ensure_health_probe",
        "cluster.ensure_lb_rule",
        "cluster.add_to_backend_pool",
        "cluster.add_to_backend_pool",
        "cluster.create_managed_group",
        "cluster.create_managed_listener",
        "cluster.primary_vm",
        "cluster.wait_for_healthy_replicas",
    ]


def test_configure_extension_mode_configures_primary_before_secondary(tmp_path):
    _write_handoff(tmp_path)
    calls = []
    settings = RunSettings(run_id="a1b2c3d4", ag_mode="extension")
    deployer = build_deployer(tmp_path, "configure", calls, settings=settings)
    roles = []
    deployer.cluster_service = Recorder(
        "cluster",
        calls,
        {
            "upload_configure_script": "https://st/scripts/s.ps1",
            "push_configuration": lambda context, settings, instances, role, *rest: roles.append(role),
            "primary_vm": "sqlvm1",
        },
    )

    assert deployer.run() == 0
    assert roles == ["Primary", "Secondary"]
    assert calls.index("cluster.upload_configure_script") < calls.index("cluster.push_configuration")
    assert calls.count("cluster.wait_for_script") == 2
    assert "cluster.create_managed_group" not in calls


def test_configure_without_handoff_file_fails(tmp_path):
    calls = []
    deployer = build_deployer(tmp_path, "configure", calls)

    assert deployer.run() == 1
    assert calls == []


def test_validate_returns_validator_exit_code_and_writes_report(tmp_path):
    _write_handoff(tmp_path)
    deployer = build_deployer(tmp_path, "validate", [])
    deployer.validator_service.run = lambda context, settings: [
        CheckResult("availability_set_domains", CheckStatus.PASSED),
        CheckResult("listener_reachability", CheckStatus.INCONCLUSIVE, detail="no route"),
    ]

    assert deployer.run() == 2

    report = json.loads((tmp_path / "report.json").read_text(encoding="utf-8"))
    assert report["exit_code"] == 2
    assert report["summary"]["inconclusive"] == 1
    manifest = json.loads((tmp_path / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["artifacts"]["validation_report"].endswith("report.json")


def test_failover_planned_delegates_to_failover_service(tmp_path):
    _write_handoff(tmp_path)
    calls = []
    deployer = build_deployer(tmp_path, "failover", calls, failover_target="sqlvm2")

    assert deployer.run() == 0
    assert "failover.planned" in calls


def test_invalid_ag_mode_fails(tmp_path):
    deployer = build_deployer(tmp_path, "provision", [], settings=RunSettings(run_id="a1b2c3d4", ag_mode="magic"))

    assert deployer.run() == 1


def test_build_settings_applies_disk_sizes_and_policies():
    settings = build_settings(
        data_disk_gb=1024,
        registration_attempts=5,
        wait_timeout_seconds=60,
        location="westeurope",
        vm_size=None,
    )

    assert len(settings.run_id) == 8
    assert settings.location == "westeurope"
    assert settings.vm_size == "Standard_D4s_v3"
    assert settings.disk("data").size_gb == 1024
    assert settings.disk("log").size_gb == 256
    assert settings.registration_retry.max_attempts == 5
    assert settings.registration_retry.backoff_seconds == 30.0
    assert settings.wait_policy.timeout_seconds == 60.0


def test_build_settings_keeps_explicit_run_id():
    assert build_settings(run_id="abc12345").run_id == "abc12345"


@pytest.mark.parametrize("stage", ["configure", "validate", "failover"])
def test_later_stages_take_run_id_from_handoff(tmp_path, stage):
    _write_handoff(tmp_path)
    deployer = build_deployer(tmp_path, stage, [], settings=RunSettings(run_id="other"))
    deployer.validator_service.run = lambda context, settings: []

    deployer.run()

    assert deployer.settings.run_id == "a1b2c3d4"


def test_provision_records_cluster_settings_for_later_stages(tmp_path):
    settings = RunSettings(run_id="a1b2c3d4", ag_mode="extension", ag_name="SALESAG")
    deployer = build_deployer(tmp_path, "provision", [], settings=settings)

    assert deployer.run() == 0

    recorded = HandoffService(str(tmp_path / "deployment-variables.sh"), DummyLogger()).read_cluster_settings()
    assert recorded["ag_mode"] == "extension"
    assert recorded["ag_name"] == "SALESAG"


def test_key_vault_name_never_ends_with_hyphen():
    context = DeploymentContext.from_settings(RunSettings(run_id="a1b2c3d4", resource_prefix="abcdefghijklmnopqrst"))

    assert context.key_vault_name == "kv-abcdefghijklmnopqrst"
    assert len(context.key_vault_name) <= 24
