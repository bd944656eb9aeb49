"""Fixed names, ports and modes shared by every stage."""

HANDOFF_FILE_MODE = 0o755

RDP_PORT = 3389
SQL_PORT = 1433
AG_ENDPOINT_PORT = 5022
PROBE_PORT = 59999

FAULT_DOMAIN_COUNT = 2
UPDATE_DOMAIN_COUNT = 5
INSTANCE_COUNT = 2

SECURITY_RULES = (
    ("AllowRDP", 1000, RDP_PORT, "Allow RDP access for administration"),
    ("AllowSQL", 1001, SQL_PORT, "Allow SQL Server access"),
    ("AllowAGReplication", 1002, AG_ENDPOINT_PORT, "Allow SQL AG endpoint replication"),
)

FRONTEND_IP_NAME = "FrontendIP"
BACKEND_POOL_NAME = "BackendPool"
PROBE_NAME = "SQLProbe"
RULE_NAME = "SQLRule"
NIC_IP_CONFIG_NAME = "ipconfig1"

SQL_IAAS_EXTENSION_NAME = "SqlIaaSAgent"
CUSTOM_SCRIPT_EXTENSION = "CustomScriptExtension"
CUSTOM_SCRIPT_PUBLISHER = "Microsoft.Compute"
CUSTOM_SCRIPT_VERSION = "1.10"
CONFIGURE_SCRIPT_NAME = "configure-sql-ag.ps1"
SCRIPT_CONTAINER_NAME = "scripts"

SECRET_ADMIN_USERNAME = "SqlAdminUsername"
SECRET_ADMIN_PASSWORD = "SqlAdminPassword"
KEY_VAULT_ROLE = "Key Vault Secrets Officer"

MIN_AZ_CLI_VERSION = "2.50.0"

AG_MODES = ("managed", "extension")

TRANSIENT_FAILURE_PATTERNS = (
    "connection reset",
    "temporary failure",
    "timed out",
    "timeout",
    "service unavailable",
    "too many requests",
    "429",
    "retryableerror",
    "another operation is in progress",
    "operationnotallowed",
    "vm agent is not ready",
    "guest agent",
)
NON_RETRYABLE_FAILURE_PATTERNS = (
    "already exists",
    "invalidparameter",
    "authorizationfailed",
    "invalidtemplate",
    "badrequest",
)
NOT_FOUND_PATTERNS = (
    "resourcenotfound",
    "resourcegroupnotfound",
    "was not found",
    "could not be found",
    "notfound",
)

STAGES = ("provision", "configure", "validate", "deploy", "failover")
FAILOVER_MODES = ("planned", "forced")

DEFAULT_CONFIG_FILE = ".sqlhadeployer.yml"
DEFAULT_HANDOFF_FILE = "deployment-variables.sh"
