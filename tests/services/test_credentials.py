import json
import logging
import string
import subprocess

import pytest

from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import DeploymentContext, RunSettings, WaitPolicy
from sqlhadeployer.services.azure_cli import AzureCliService
from sqlhadeployer.services.command_runner import CommandRunner
from sqlhadeployer.services.credentials import PASSWORD_SYMBOLS, CredentialService, generate_password


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeAzureCli:
    def __init__(self, shows=None, responses=None):
        self.shows = shows or {}
        self.responses = responses or {}
        self.calls = []
        self.sensitive = []

    @staticmethod
    def verb(args):
        words = []
        for arg in args:
            if arg.startswith("-"):
                break
            words.append(arg)
        return " ".join(words)

    def show(self, args, sensitive=False):
        self.calls.append(("show", args, ()))
        if sensitive:
            self.sensitive.append(self.verb(args))
        value = self.shows.get(self.verb(args))
        return value(args) if callable(value) else value

    def az(self, args, retry=None, secrets=(), sensitive=False):
        self.calls.append(("az", args, tuple(secrets)))
        if sensitive:
            self.sensitive.append(self.verb(args))
        value = self.responses.get(self.verb(args))
        return value(args) if callable(value) else value

    def verbs(self, kind="az"):
        return [self.verb(args) for call_kind, args, _ in self.calls if call_kind == kind]


class ImmediateWaiter:
    def __init__(self):
        self.descriptions = []

    def until(self, description, probe, policy, tolerate_errors=True):
        self.descriptions.append(description)
        return probe()


def _context():
    return DeploymentContext.from_settings(RunSettings(run_id="a1b2c3d4"))


def _service(azure_cli):
    return CredentialService(azure_cli, ImmediateWaiter(), DummyLogger(), DummyConsole())


def test_generate_password_meets_complexity_rules():
    for _ in range(20):
        password = generate_password()
        assert len(password) == 24
        assert any(ch in string.ascii_lowercase for ch in password)
        assert any(ch in string.ascii_uppercase for ch in password)
        assert any(ch in string.digits for ch in password)
        assert any(ch in PASSWORD_SYMBOLS for ch in password)


def test_generate_password_rejects_short_lengths():
    with pytest.raises(ValueError):
        generate_password(8)


def test_ensure_key_vault_creates_rbac_vault_when_missing():
    azure_cli = FakeAzureCli(responses={"keyvault create": {"id": "/vaults/kv"}})

    vault_id = _service(azure_cli).ensure_key_vault(_context())

    assert vault_id == "/vaults/kv"
    create_args = [args for kind, args, _ in azure_cli.calls if kind == "az"][0]
    assert "--enable-rbac-authorization" in create_args


def test_ensure_key_vault_reuses_existing_vault():
    azure_cli = FakeAzureCli(shows={"keyvault show": {"id": "/vaults/existing"}})

    assert _service(azure_cli).ensure_key_vault(_context()) == "/vaults/existing"
    assert azure_cli.verbs() == []


def test_grant_caller_access_assigns_secrets_officer_once():
    azure_cli = FakeAzureCli(
        responses={"ad signed-in-user show": {"id": "user-oid"}, "role assignment list": []}
    )

    _service(azure_cli).grant_caller_access("/vaults/kv")

    create_args = [args for kind, args, _ in azure_cli.calls if azure_cli.verb(args) == "role assignment create"][0]
    assert create_args[create_args.index("--role") + 1] == "Key Vault Secrets Officer"
    assert create_args[create_args.index("--scope") + 1] == "/vaults/kv"


def test_grant_caller_access_skips_existing_assignment():
    azure_cli = FakeAzureCli(
        responses={"ad signed-in-user show": {"id": "user-oid"}, "role assignment list": [{"id": "ra"}]}
    )

    _service(azure_cli).grant_caller_access("/vaults/kv")

    assert "role assignment create" not in azure_cli.verbs()


def test_wait_for_secret_access_polls_secret_list():
    azure_cli = FakeAzureCli(responses={"keyvault secret list": []})
    service = _service(azure_cli)

    service.wait_for_secret_access(_context(), WaitPolicy())

    assert azure_cli.verbs() == ["keyvault secret list"]
    assert "role assignment propagation" in service.waiter.descriptions[0]


def test_store_credentials_masks_password():
    azure_cli = FakeAzureCli()

    _service(azure_cli).store_credentials(_context(), "sqladmin", "P@ssw0rd-123456")

    sets = [call for call in azure_cli.calls if azure_cli.verb(call[1]) == "keyvault secret set"]
    assert [args[args.index("--name") + 1] for _, args, _ in sets] == ["SqlAdminUsername", "SqlAdminPassword"]
    assert all("P@ssw0rd-123456" in secrets for _, _, secrets in sets)


def test_existing_credentials_returns_none_when_secret_missing():
    azure_cli = FakeAzureCli(shows={"keyvault secret show": None})

    assert _service(azure_cli).existing_credentials(_context()) is None


def test_read_credentials_returns_stored_pair():
    def secret(args):
        name = args[args.index("--name") + 1]
        return {"value": {"SqlAdminUsername": "sqladmin", "SqlAdminPassword": "pw"}[name]}

    azure_cli = FakeAzureCli(shows={"keyvault secret show": secret})

    assert _service(azure_cli).read_credentials(_context()) == ("sqladmin", "pw")


def test_read_secret_raises_when_missing():
    azure_cli = FakeAzureCli(shows={"keyvault secret show": None})

    with pytest.raises(DeployerError, match="SqlAdminPassword"):
        _service(azure_cli).read_secret(_context(), "SqlAdminPassword")


def test_generate_password_never_starts_with_option_prefix():
    for _ in range(500):
        password = generate_password()
        assert password[0].isalnum()
        assert not set(password) & set("^%\"'&|<>")


def test_store_credentials_passes_value_inline_and_returns_only_the_id():
    azure_cli = FakeAzureCli()

    _service(azure_cli).store_credentials(_context(), "sqladmin", "-Leading-dash-pw1")

    sets = [args for kind, args, _ in azure_cli.calls if azure_cli.verb(args) == "keyvault secret set"]
    assert "--value=-Leading-dash-pw1" in sets[1]
    assert "--value" not in sets[1]
    assert all(args[args.index("--query") + 1] == "id" for args in sets)
    assert azure_cli.sensitive == ["keyvault secret set", "keyvault secret set"]


def test_secret_reads_are_kept_out_of_logs():
    def secret(args):
        return {"value": "pw"}

    azure_cli = FakeAzureCli(shows={"keyvault secret show": secret})

    _service(azure_cli).read_credentials(_context())

    assert azure_cli.sensitive == ["keyvault secret show", "keyvault secret show"]


def test_debug_log_never_contains_the_admin_password(monkeypatch, caplog):
    password = "S3cret!Pass-word#42xyz"
    stored = {}

    def fake_run(cmd, **_kwargs):
        name = cmd[cmd.index("--name") + 1]
        value_args = [arg for arg in cmd if arg.startswith("--value=")]
        if value_args:
            stored[name] = value_args[0].split("=", 1)[1]
        payload = {"id": f"https://kv/secrets/{name}", "value": stored.get(name)}
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(payload), stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    logger = logging.getLogger("sqlhadeployer.credentials-test")
    caplog.set_level(logging.DEBUG, logger=logger.name)
    azure_cli = AzureCliService(CommandRunner(logger=logger), logger, DummyConsole())
    service = _service(azure_cli)

    service.store_credentials(_context(), "sqladmin", password)

    assert service.read_credentials(_context()) == ("sqladmin", password)
    assert caplog.records
    assert password not in caplog.text
