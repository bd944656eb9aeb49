"""Admin credential generation and Key Vault storage."""

import secrets
import string
from typing import Optional, Tuple

from sqlhadeployer.constants import KEY_VAULT_ROLE, SECRET_ADMIN_PASSWORD, SECRET_ADMIN_USERNAME
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.models import DeploymentContext, WaitPolicy

# Symbols Azure accepts in VM admin passwords that are not cmd.exe metacharacters.
PASSWORD_SYMBOLS = "!@#*-_=+"


def generate_password(length: int = 24) -> str:
    """Random password that satisfies the Azure VM complexity rules."""
    if length < 12:
        raise ValueError("Password length must be at least 12 characters.")

    pools = (string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SYMBOLS)
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars) - 1))
    secrets.SystemRandom().shuffle(chars)
    # A leading "-" would be parsed by az as an option.
    first = secrets.choice(string.ascii_letters + string.digits)
    return first + "".join(chars)


class CredentialService:
    """Creates the vault, grants the caller access and stores the admin secrets."""

    def __init__(self, azure_cli, waiter, logger, console):
        self.azure_cli = azure_cli
        self.waiter = waiter
        self.logger = logger
        self.console = console

    def ensure_key_vault(self, context: DeploymentContext) -> str:
        vault = self.azure_cli.show(
            [
                "keyvault",
                "show",
                "--name",
                context.key_vault_name,
                "--resource-group",
                context.resource_group,
            ]
        )
        if vault is None:
            self.console.print(f"[blue]Creating Key Vault {context.key_vault_name}...[/blue]")
            vault = self.azure_cli.az(
                [
                    "keyvault",
                    "create",
                    "--name",
                    context.key_vault_name,
                    "--resource-group",
                    context.resource_group,
                    "--location",
                    context.location,
                    "--enable-rbac-authorization",
                    "true",
                ]
            )
        else:
            self.logger.info("Key Vault %s already exists.", context.key_vault_name)
        return str(vault["id"])

    def grant_caller_access(self, vault_id: str):
        user = self.azure_cli.az(["ad", "signed-in-user", "show"])
        object_id = str(user["id"])

        existing = self.azure_cli.az(
            [
                "role",
                "assignment",
                "list",
                "--assignee",
                object_id,
                "--role",
                KEY_VAULT_ROLE,
                "--scope",
                vault_id,
            ]
        )
        if existing:
            self.logger.info("Role '%s' already assigned on the vault.", KEY_VAULT_ROLE)
            return

        self.azure_cli.az(
            [
                "role",
                "assignment",
                "create",
                "--role",
                KEY_VAULT_ROLE,
                "--assignee-object-id",
                object_id,
                "--assignee-principal-type",
                "User",
                "--scope",
                vault_id,
            ]
        )

    def wait_for_secret_access(self, context: DeploymentContext, policy: WaitPolicy):
        def can_list_secrets():
            self.azure_cli.az(["keyvault", "secret", "list", "--vault-name", context.key_vault_name])
            return True

        self.waiter.until(
            f"role assignment propagation on {context.key_vault_name}",
            can_list_secrets,
            policy,
        )

    def read_secret(self, context: DeploymentContext, name: str) -> str:
        secret = self.azure_cli.show(
            ["keyvault", "secret", "show", "--vault-name", context.key_vault_name, "--name", name],
            sensitive=True,
        )
        if not secret or not secret.get("value"):
            raise DeployerError(f"Secret '{name}' not found in Key Vault {context.key_vault_name}.")
        return str(secret["value"])

    def existing_credentials(self, context: DeploymentContext) -> Optional[Tuple[str, str]]:
        """Stored credentials, or None when the vault holds none yet."""
        values = []
        for name in (SECRET_ADMIN_USERNAME, SECRET_ADMIN_PASSWORD):
            secret = self.azure_cli.show(
                ["keyvault", "secret", "show", "--vault-name", context.key_vault_name, "--name", name],
                sensitive=True,
            )
            if not secret or not secret.get("value"):
                return None
            values.append(str(secret["value"]))
        return values[0], values[1]

    def read_credentials(self, context: DeploymentContext) -> Tuple[str, str]:
        return (
            self.read_secret(context, SECRET_ADMIN_USERNAME),
            self.read_secret(context, SECRET_ADMIN_PASSWORD),
        )

    def store_credentials(self, context: DeploymentContext, username: str, password: str):
        for name, value in ((SECRET_ADMIN_USERNAME, username), (SECRET_ADMIN_PASSWORD, password)):
            self.azure_cli.az(
                [
                    "keyvault",
                    "secret",
                    "set",
                    "--vault-name",
                    context.key_vault_name,
                    "--name",
                    name,
                    f"--value={value}",
                    "--query",
                    "id",
                ],
                secrets=(password,),
                sensitive=True,
            )
        self.console.print("[green]Admin credentials stored in Key Vault.[/green]")
