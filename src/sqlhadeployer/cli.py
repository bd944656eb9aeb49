import logging
import os

import click
from rich.logging import RichHandler

from .constants import AG_MODES, DEFAULT_CONFIG_FILE, DEFAULT_HANDOFF_FILE, FAILOVER_MODES
from .core import SqlHaDeployer, build_settings
from .errors import DeployerError
from .services.config_loader import ConfigLoader
from .services.handoff import HandoffService

# Option name -> type applied to values coming from either the CLI or the config file.
SETTING_TYPES = {
    "run_id": str,
    "location": str,
    "resource_prefix": str,
    "vm_prefix": str,
    "vm_size": str,
    "image": str,
    "admin_username": str,
    "license_type": str,
    "address_prefix": str,
    "subnet_prefix": str,
    "listener_ip": str,
    "ag_name": str,
    "listener_name": str,
    "lb_name": str,
    "probe_port": int,
    "ag_mode": str,
    "os_disk_gb": int,
    "data_disk_gb": int,
    "log_disk_gb": int,
    "temp_disk_gb": int,
    "registration_attempts": int,
    "registration_backoff_seconds": float,
    "wait_timeout_seconds": float,
    "command_timeout_seconds": float,
}


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)

NEW_RUN_HELP = "Generate a new run id even when the hand-off file names an existing deployment."


_COMMON_OPTIONS = [
    click.option(
        "--config",
        required=False,
        type=click.Path(),
        help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
    ),
    click.option(
        "--handoff-file",
        required=False,
        type=click.Path(),
        help=f"Deployment variables file shared between stages (default: {DEFAULT_HANDOFF_FILE}).",
    ),
    click.option("--log-file", type=click.Path(), help="Path to log file (default: sqlha-<stage>-<run_id>.log)"),
    click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging"),
    click.option(
        "--resume",
        is_flag=True,
        default=None,
        help="Resume a previously interrupted run using the execution state file.",
    ),
    click.option(
        "--state-file",
        required=False,
        type=click.Path(),
        help="Path to the run state file (default: sqlha-<stage>-state.json).",
    ),
    click.option("--run-id", required=False, help="Run identifier used in every resource name."),
    click.option("--location", required=False, help="Azure region (default: eastus2)."),
    click.option("--resource-prefix", required=False, help="Prefix for resource names (default: sqlha)."),
    click.option("--vm-prefix", required=False, help="Prefix for instance names (default: sqlvm)."),
    click.option("--vm-size", required=False, help="VM size (default: Standard_D4s_v3)."),
    click.option("--image", required=False, help="SQL Server marketplace image URN."),
    click.option("--admin-username", required=False, help="Local admin / SQL login name."),
    click.option("--license-type", required=False, help="SQL Server license type (PAYG or AHUB)."),
    click.option("--address-prefix", required=False, help="VNet address space."),
    click.option("--subnet-prefix", required=False, help="Subnet address range."),
    click.option("--listener-ip", required=False, help="Static IP of the listener and LB frontend."),
    click.option("--ag-name", required=False, help="Availability group name."),
    click.option("--listener-name", required=False, help="Listener DNS name."),
    click.option("--lb-name", required=False, help="Internal load balancer name."),
    click.option("--probe-port", required=False, type=int, default=None, help="Health probe port."),
    click.option(
        "--ag-mode",
        required=False,
        type=click.Choice(AG_MODES),
        help="Create the AG through the SQL VM group API or a Custom Script Extension.",
    ),
    click.option("--os-disk-gb", required=False, type=int, default=None, help="OS disk size."),
    click.option("--data-disk-gb", required=False, type=int, default=None, help="Data disk size."),
    click.option("--log-disk-gb", required=False, type=int, default=None, help="Log disk size."),
    click.option("--temp-disk-gb", required=False, type=int, default=None, help="Temp disk size."),
    click.option(
        "--registration-attempts",
        required=False,
        type=int,
        default=None,
        help="Attempts for SQL IaaS agent registration (default: 3).",
    ),
    click.option(
        "--registration-backoff-seconds",
        required=False,
        type=float,
        default=None,
        help="Wait between registration attempts (default: 30).",
    ),
    click.option(
        "--wait-timeout-seconds",
        required=False,
        type=float,
        default=None,
        help="Upper bound for each readiness wait (default: 900).",
    ),
    click.option(
        "--command-timeout-seconds",
        required=False,
        type=float,
        default=None,
        help="Timeout for a single az command (default: 1800).",
    ),
]


def common_options(func):
    for option in reversed(_COMMON_OPTIONS):
        func = option(func)
    return func


def _load_config(config):
    config_loader = ConfigLoader()
    resolved_config = config
    if resolved_config is None:
        default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
        if os.path.exists(default_config_path):
            resolved_config = default_config_path
    return config_loader.load(resolved_config)


def _handoff_run_id(handoff_file):
    try:
        return HandoffService(handoff_file, logging.getLogger("sqlhadeployer")).read().run_id
    except DeployerError:
        return None


def _handoff_cluster_settings(handoff_file):
    try:
        return HandoffService(handoff_file, logging.getLogger("sqlhadeployer")).read_cluster_settings()
    except DeployerError:
        return {}


def _configure_logging(verbose, log_file):
    logger = logging.getLogger("sqlhadeployer")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _execute(stage, params, new_run=False, **stage_kwargs):
    try:
        config_values = _load_config(params.pop("config"))
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    handoff_file = _resolve_option(
        params.get("handoff_file"), config_values, "handoff_file", default=DEFAULT_HANDOFF_FILE
    )
    # Later stages default to the cluster settings recorded at provisioning.
    handoff_settings = {} if stage in ("provision", "deploy") else _handoff_cluster_settings(handoff_file)

    values = {}
    for key, cast in SETTING_TYPES.items():
        value = _resolve_option(params.get(key), config_values, key, default=handoff_settings.get(key))
        if value is not None:
            try:
                value = cast(value)
            except (TypeError, ValueError) as exc:
                raise click.ClickException(f"Invalid value for '{key}': {value!r}") from exc
        values[key] = value

    if values["ag_mode"] is not None and values["ag_mode"] not in AG_MODES:
        raise click.ClickException(f"Invalid ag_mode '{values['ag_mode']}'. Use one of: {', '.join(AG_MODES)}")

    verbose = bool(_resolve_option(params.get("verbose"), config_values, "verbose", default=False))
    resume = bool(_resolve_option(params.get("resume"), config_values, "resume", default=False))
    state_file = _resolve_option(params.get("state_file"), config_values, "state_file")
    log_file = _resolve_option(params.get("log_file"), config_values, "log_file")

    run_id = values.pop("run_id")
    if run_id is None and not new_run:
        run_id = _handoff_run_id(handoff_file)
        if run_id and stage in ("provision", "deploy"):
            logging.getLogger("sqlhadeployer").info(
                "Reusing run id %s from %s. Pass --new-run to start a separate deployment.", run_id, handoff_file
            )
    run_id_explicit = run_id is not None

    settings = build_settings(run_id=run_id, **values)
    log_file = log_file or f"sqlha-{stage}-{settings.run_id}.log"
    _configure_logging(verbose, log_file)

    try:
        deployer = SqlHaDeployer(
            settings=settings,
            stage=stage,
            handoff_file=handoff_file,
            resume=resume,
            state_file=state_file,
            log_file=log_file,
            run_id_explicit=run_id_explicit,
            **stage_kwargs,
        )
    except DeployerError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(deployer.run())


@click.group()
def main():
    """Provision, configure and validate a two-node SQL Server HA cluster on Azure."""


@main.command()
@common_options
@click.option("--new-run", is_flag=True, default=False, help=NEW_RUN_HELP)
def provision(new_run, **params):
    """Create the network, Key Vault, availability set and both SQL Server VMs."""
    _execute("provision", params, new_run=new_run)


@main.command()
@common_options
def configure(**params):
    """Create the load balancer, availability group and listener."""
    _execute("configure", params)


@main.command()
@common_options
@click.option("--report-file", required=False, type=click.Path(), help="Path for the JSON validation report.")
def validate(report_file, **params):
    """Check the deployed cluster. Exit code 0 passed, 1 failed, 2 inconclusive."""
    _execute("validate", params, report_file=report_file)


@main.command()
@common_options
@click.option("--report-file", required=False, type=click.Path(), help="Path for the JSON validation report.")
@click.option("--new-run", is_flag=True, default=False, help=NEW_RUN_HELP)
def deploy(report_file, new_run, **params):
    """Run provision, configure and validate in one go."""
    _execute("deploy", params, new_run=new_run, report_file=report_file)


@main.command()
@common_options
@click.option(
    "--mode",
    "failover_mode",
    type=click.Choice(FAILOVER_MODES),
    default="planned",
    show_default=True,
    help="Planned failover needs healthy replicas; forced failover may lose data.",
)
@click.option("--target", "failover_target", required=False, help="Instance that becomes primary.")
@click.option(
    "--allow-data-loss",
    is_flag=True,
    default=False,
    help="Required confirmation for forced failover.",
)
def failover(failover_mode, failover_target, allow_data_loss, **params):
    """Move the primary role to the other replica."""
    _execute(
        "failover",
        params,
        failover_mode=failover_mode,
        failover_target=failover_target,
        allow_data_loss=allow_data_loss,
    )


if __name__ == "__main__":
    main()
