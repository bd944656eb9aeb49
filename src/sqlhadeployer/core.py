import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console

from .constants import AG_MODES, DEFAULT_HANDOFF_FILE, FAILOVER_MODES, INSTANCE_COUNT, STAGES
from .errors import DeployerError
from .models import DeploymentContext, InstanceInfo, RetryPolicy, RunSettings, WaitPolicy, default_disks
from .services.atomic_file import write_json_atomic
from .services.azure_cli import AzureCliService
from .services.cluster import ClusterService
from .services.command_runner import CommandRunner
from .services.credentials import CredentialService, generate_password
from .services.failover import FailoverService
from .services.handoff import HandoffService
from .services.manifest import ManifestService
from .services.provisioner import ProvisionerService
from .services.remote_sql import RemoteSqlService
from .services.state import StateService
from .services.validator import ValidatorService
from .services.waiter import Waiter

console = Console()
logger = logging.getLogger("sqlhadeployer")


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


def build_settings(
    run_id: Optional[str] = None,
    os_disk_gb: Optional[int] = None,
    data_disk_gb: Optional[int] = None,
    log_disk_gb: Optional[int] = None,
    temp_disk_gb: Optional[int] = None,
    registration_attempts: Optional[int] = None,
    registration_backoff_seconds: Optional[float] = None,
    wait_timeout_seconds: Optional[float] = None,
    **values: Any,
) -> RunSettings:
    """Builds RunSettings from flat option values; None means "use the default"."""
    kwargs = {key: value for key, value in values.items() if value is not None}

    sizes = {"os": os_disk_gb, "data": data_disk_gb, "log": log_disk_gb, "temp": temp_disk_gb}
    kwargs["disks"] = tuple(
        replace(spec, size_gb=int(sizes[spec.role])) if sizes.get(spec.role) else spec
        for spec in default_disks()
    )

    defaults = RunSettings(run_id="defaults")
    if registration_attempts is not None or registration_backoff_seconds is not None:
        kwargs["registration_retry"] = RetryPolicy(
            max_attempts=int(
                registration_attempts
                if registration_attempts is not None
                else defaults.registration_retry.max_attempts
            ),
            backoff_seconds=float(
                registration_backoff_seconds
                if registration_backoff_seconds is not None
                else defaults.registration_retry.backoff_seconds
            ),
            retry_any_failure=True,
        )
    if wait_timeout_seconds is not None:
        kwargs["wait_policy"] = WaitPolicy(timeout_seconds=float(wait_timeout_seconds))

    return RunSettings(run_id=run_id or new_run_id(), **kwargs)


class SqlHaDeployer:
    STAGES = STAGES

    def __init__(
        self,
        settings: RunSettings,
        stage: str,
        handoff_file: Optional[str] = None,
        resume: bool = False,
        state_file: Optional[str] = None,
        manifest_file: Optional[str] = None,
        report_file: Optional[str] = None,
        log_file: Optional[str] = None,
        run_id_explicit: bool = True,
        failover_mode: str = "planned",
        failover_target: Optional[str] = None,
        allow_data_loss: bool = False,
    ):
        self.settings = settings
        self.stage = stage
        self.handoff_file = handoff_file or DEFAULT_HANDOFF_FILE
        self.resume = resume
        self.state_file = state_file or f"sqlha-{stage}-state.json"
        self.manifest_file = manifest_file or f"sqlha-{stage}-manifest.json"
        self.report_file = report_file
        self.log_file = log_file
        self.run_id_explicit = run_id_explicit
        self.failover_mode = failover_mode
        self.failover_target = failover_target
        self.allow_data_loss = allow_data_loss

        self.context: Optional[DeploymentContext] = None
        self.state: Optional[Dict[str, Any]] = None
        self.current_step_name: Optional[str] = None
        self.subscription_id: Optional[str] = None

        self.state_service = StateService(state_file=self.state_file, logger=logger)
        self.manifest_service = ManifestService(
            manifest_file=self.manifest_file, logger=logger, stage=stage
        )
        self.handoff_service = HandoffService(handoff_file=self.handoff_file, logger=logger)

        self.command_runner = CommandRunner(
            logger=logger, default_timeout=settings.command_timeout_seconds
        )
        self.azure_cli = AzureCliService(
            command_runner=self.command_runner,
            logger=logger,
            console=console,
            retry=settings.transient_retry,
        )
        self.waiter = Waiter(logger=logger, console=console)
        self.remote_sql = RemoteSqlService(azure_cli=self.azure_cli, logger=logger)
        self.credential_service = CredentialService(
            azure_cli=self.azure_cli, waiter=self.waiter, logger=logger, console=console
        )
        self.provisioner_service = ProvisionerService(
            azure_cli=self.azure_cli, waiter=self.waiter, logger=logger, console=console
        )
        self.cluster_service = ClusterService(
            azure_cli=self.azure_cli,
            remote_sql=self.remote_sql,
            waiter=self.waiter,
            logger=logger,
            console=console,
        )
        self.validator_service = ValidatorService(
            azure_cli=self.azure_cli, remote_sql=self.remote_sql, logger=logger, console=console
        )
        self.failover_service = FailoverService(
            remote_sql=self.remote_sql,
            cluster_service=self.cluster_service,
            waiter=self.waiter,
            logger=logger,
            console=console,
        )

    def _build_resume_metadata(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "run_id": self.settings.run_id,
            "location": self.settings.location,
            "resource_prefix": self.settings.resource_prefix,
            "ag_mode": self.settings.ag_mode,
        }

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        metadata = self._build_resume_metadata()
        metadata.update(
            {
                "resume_enabled": self.resume,
                "state_file": self.state_file if self.resume else None,
                "handoff_file": self.handoff_file,
            }
        )
        return metadata

    def _initialize_state(self) -> bool:
        if not self.resume:
            return False

        existing = self.state_service.load()
        if existing and self.context is None and not self.run_id_explicit:
            previous_run_id = (existing.get("metadata") or {}).get("run_id")
            if previous_run_id and previous_run_id != self.settings.run_id:
                logger.info("Adopting run id '%s' from the state file.", previous_run_id)
                self.settings = replace(self.settings, run_id=previous_run_id)

        state, resumed = self.state_service.initialize(
            metadata=self._build_resume_metadata(),
            run_context={"run_id": self.settings.run_id},
            resume=True,
        )
        self.state = state

        if resumed:
            logger.info(
                "Resuming previous run '%s' at step '%s'.",
                self.settings.run_id,
                state.get("current_step") or "<none>",
            )
            if state.get("status") == "success":
                raise DeployerError(
                    "The state file already belongs to a successful run. Remove it or choose another --state-file."
                )
            state["status"] = "running"
            self.state_service.save(state)
        else:
            logger.info("Resume state initialized at %s", self.state_file)

        return resumed

    def _run_step(
        self,
        name: str,
        callback,
        *args,
        skip_when_completed: bool = True,
        **kwargs,
    ):
        if (
            self.resume
            and self.state
            and skip_when_completed
            and self.state_service.is_step_completed(self.state, name)
        ):
            logger.info("Skipping completed step from state: %s", name)
            self.manifest_service.step_started(name, details={"resumed": True})
            self.manifest_service.step_finished(name, "skipped", details={"resumed": True})
            return None, True

        if self.state:
            self.state_service.mark_step_started(self.state, name)
        self.manifest_service.step_started(name)
        self.current_step_name = name

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            if self.state:
                self.state_service.mark_step_failed(self.state, name, str(exc))
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        if self.state:
            self.state_service.mark_step_completed(self.state, name)
        self.manifest_service.step_finished(name, "success")
        self.current_step_name = None
        return result, False

    def _load_context(self) -> DeploymentContext:
        """Context of the provisioned deployment, read from the hand-off file once."""
        if self.context is None:
            self.context = self.handoff_service.read()
            self.settings = replace(
                self.settings, run_id=self.context.run_id, location=self.context.location
            )
        return self.context

    def validate_environment(self) -> str:
        if self.subscription_id is None:
            self.subscription_id = self.azure_cli.validate_environment()
        return self.subscription_id

    def prepare_key_vault(self, context: DeploymentContext):
        vault_id = self.credential_service.ensure_key_vault(context)
        self.credential_service.grant_caller_access(vault_id)
        self.credential_service.wait_for_secret_access(context, self.settings.wait_policy)

    def admin_credentials(self, context: DeploymentContext) -> Tuple[str, str]:
        """Stored credentials when present, otherwise a fresh pair written to the vault."""
        existing = self.credential_service.existing_credentials(context)
        if existing:
            logger.info("Reusing admin credentials stored in %s.", context.key_vault_name)
            return existing

        username = self.settings.admin_username
        password = generate_password()
        self.credential_service.store_credentials(context, username, password)
        return username, password

    # Stages

    def provision(self) -> DeploymentContext:
        settings = self.settings
        context = DeploymentContext.from_settings(settings)
        self.context = context
        console.print(f"[bold blue]Provisioning run {settings.run_id} in {context.resource_group}[/bold blue]")

        self._run_step("validate_environment", self.validate_environment, skip_when_completed=False)
        self._run_step(
            "ensure_resource_group", self.provisioner_service.ensure_resource_group, context
        )
        self._run_step("ensure_network", self.provisioner_service.ensure_network, context, settings)
        self._run_step(
            "ensure_security_rules", self.provisioner_service.ensure_security_rules, context
        )
        self._run_step(
            "ensure_availability_set", self.provisioner_service.ensure_availability_set, context
        )
        self._run_step("prepare_key_vault", self.prepare_key_vault, context)
        credentials, _ = self._run_step(
            "admin_credentials", self.admin_credentials, context, skip_when_completed=False
        )
        username, password = credentials

        for vm_name in context.instance_names(INSTANCE_COUNT):
            self._run_step(
                f"ensure_instance_{vm_name}",
                self.provisioner_service.ensure_instance,
                context,
                settings,
                vm_name,
                username,
                password,
            )
            self._run_step(
                f"attach_disks_{vm_name}",
                self.provisioner_service.attach_disks,
                context,
                settings,
                vm_name,
            )
            self._run_step(
                f"register_instance_{vm_name}",
                self.provisioner_service.register_instance,
                context,
                settings,
                vm_name,
            )

        self._run_step(
            "write_handoff", self.handoff_service.write, context, settings, skip_when_completed=False
        )
        self.manifest_service.add_artifact("handoff_file", self.handoff_file)

        instances = [
            self.provisioner_service.describe_instance(context, vm_name)
            for vm_name in context.instance_names(INSTANCE_COUNT)
        ]
        summary = self.provisioner_service.summary(context, instances)
        if self.state:
            self.state_service.set_value(self.state, "provision_summary", summary)
        for item in summary["instances"]:
            console.print(
                f"[green]{item['name']}[/green] private {item['private_ip'] or '-'} public {item['public_ip'] or '-'}"
            )
        console.print(f"[bold green]Provisioning complete. Variables saved to {self.handoff_file}[/bold green]")
        return context

    def configure(self) -> DeploymentContext:
        context = self._load_context()
        settings = self.settings
        console.print(f"[bold blue]Configuring {settings.ag_name} ({settings.ag_mode} mode) in {context.resource_group}[/bold blue]")

        self._run_step("validate_environment", self.validate_environment, skip_when_completed=False)
        username, password = self.credential_service.read_credentials(context)

        self._run_step("ensure_load_balancer", self.cluster_service.ensure_load_balancer, context, settings)
        self._run_step("ensure_health_probe", self.cluster_service.ensure_health_probe, context, settings)
        self._run_step("ensure_lb_rule", self.cluster_service.ensure_lb_rule, context, settings)
        for vm_name in context.instance_names(INSTANCE_COUNT):
            self._run_step(
                f"add_to_backend_pool_{vm_name}",
                self.cluster_service.add_to_backend_pool,
                context,
                settings,
                vm_name,
            )

        if settings.ag_mode == "managed":
            self._run_step(
                "create_availability_group",
                self.cluster_service.create_managed_group,
                context,
                settings,
                username,
                password,
            )
            self._run_step(
                "create_listener", self.cluster_service.create_managed_listener, context, settings
            )
        else:
            self._configure_with_extension(context, username, password)

        self._run_step(
            "wait_for_healthy_replicas",
            self._wait_for_healthy_replicas,
            context,
            skip_when_completed=False,
        )
        console.print(
            f"[bold green]Availability group {settings.ag_name} is healthy. "
            f"Listener {settings.listener_name} at {settings.listener_ip}:1433[/bold green]"
        )
        return context

    def _configure_with_extension(self, context: DeploymentContext, username: str, password: str):
        settings = self.settings
        script_url = None
        if self.state:
            script_url = self.state_service.get_value(self.state, "script_url")
        if not script_url:
            script_url, _ = self._run_step(
                "upload_configure_script",
                self.cluster_service.upload_configure_script,
                context,
                skip_when_completed=False,
            )
            if self.state:
                self.state_service.set_value(self.state, "script_url", script_url)

        instances: List[InstanceInfo] = [
            self.provisioner_service.describe_instance(context, vm_name)
            for vm_name in context.instance_names(INSTANCE_COUNT)
        ]
        missing = [item.name for item in instances if not item.private_ip]
        if missing:
            raise DeployerError(f"No private IP reported for: {', '.join(missing)}")

        for role, instance in zip(("Primary", "Secondary"), instances):
            self._run_step(
                f"configure_{role.lower()}",
                self._push_and_wait,
                context,
                instances,
                role,
                instance.name,
                script_url,
                username,
                password,
            )

    def _push_and_wait(
        self,
        context: DeploymentContext,
        instances: List[InstanceInfo],
        role: str,
        vm_name: str,
        script_url: str,
        username: str,
        password: str,
    ):
        self.cluster_service.push_configuration(
            context, self.settings, instances, role, script_url, username, password
        )
        self.cluster_service.wait_for_script(context, self.settings, vm_name)

    def _wait_for_healthy_replicas(self, context: DeploymentContext):
        primary = self.cluster_service.primary_vm(context, self.settings)
        if primary is None:
            primary = context.instance_names(INSTANCE_COUNT)[0]
            logger.debug("Primary not reported yet, polling replicas through %s.", primary)
        self.cluster_service.wait_for_healthy_replicas(context, self.settings, primary)

    def validate(self) -> int:
        context = self._load_context()
        self._run_step("validate_environment", self.validate_environment, skip_when_completed=False)

        results, _ = self._run_step(
            "run_checks",
            self.validator_service.run,
            context,
            self.settings,
            skip_when_completed=False,
        )
        console.print(self.validator_service.render(results))

        report = self.validator_service.report(context, results)
        report_file = self.report_file or f"sqlha-validation-{context.run_id}.json"
        try:
            write_json_atomic(report_file, report, prefix="validation-")
        except OSError as exc:
            raise DeployerError(f"Could not write validation report '{report_file}': {exc}") from exc
        self.manifest_service.add_artifact("validation_report", report_file)

        exit_code = report["exit_code"]
        summary = report["summary"]
        style = {0: "green", 1: "red", 2: "yellow"}[exit_code]
        console.print(
            f"[bold {style}]{summary['passed']} passed, {summary['failed']} failed, "
            f"{summary['inconclusive']} inconclusive[/bold {style}]"
        )
        return exit_code

    def failover(self) -> Dict[str, Any]:
        context = self._load_context()
        self._run_step("validate_environment", self.validate_environment, skip_when_completed=False)

        if self.failover_mode == "planned":
            outcome, _ = self._run_step(
                "planned_failover",
                self.failover_service.planned,
                context,
                self.settings,
                self.failover_target,
                skip_when_completed=False,
            )
        else:
            outcome, _ = self._run_step(
                "forced_failover",
                self.failover_service.forced,
                context,
                self.settings,
                self.failover_target,
                allow_data_loss=self.allow_data_loss,
                skip_when_completed=False,
            )
        if self.state:
            self.state_service.set_value(self.state, "failover", outcome)
        return outcome

    def deploy(self) -> int:
        self.provision()
        self.configure()
        return self.validate()

    def _check_inputs(self):
        if self.stage not in self.STAGES:
            raise DeployerError(f"Invalid stage. Supported stages: {', '.join(self.STAGES)}")
        if self.settings.ag_mode not in AG_MODES:
            raise DeployerError(f"Invalid AG mode '{self.settings.ag_mode}'. Use one of: {', '.join(AG_MODES)}")
        if self.failover_mode not in FAILOVER_MODES:
            raise DeployerError(
                f"Invalid failover mode '{self.failover_mode}'. Use one of: {', '.join(FAILOVER_MODES)}"
            )

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info("Starting SQLHA Deployer (%s)...", self.stage)
            self._check_inputs()

            if self.stage not in ("provision", "deploy"):
                self._load_context()

            self._initialize_state()
            self.manifest_service.start_run(
                run_id=self.settings.run_id,
                metadata=self._build_manifest_metadata(),
            )
            if self.log_file:
                self.manifest_service.add_artifact("log_file", self.log_file)

            if self.stage == "provision":
                self.provision()
                exit_code = 0
            elif self.stage == "configure":
                self.configure()
                exit_code = 0
            elif self.stage == "validate":
                exit_code = self.validate()
            elif self.stage == "deploy":
                exit_code = self.deploy()
            else:
                self.failover()
                exit_code = 0

            if self.state:
                self.state_service.mark_status(self.state, "success")
            manifest_status = "success" if exit_code == 0 else "completed_with_findings"
            manifest_error = None
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            if self.state:
                self.state_service.mark_status(self.state, "aborted", "Operation cancelled by user.")
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            exit_code = 1
            return exit_code
        except DeployerError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            if self.state:
                failed_step = self.current_step_name or "run"
                self.state_service.mark_step_failed(self.state, failed_step, str(exc))
                self.state_service.mark_status(self.state, "failed", str(exc))
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            if self.state:
                failed_step = self.current_step_name or "run"
                self.state_service.mark_step_failed(self.state, failed_step, str(exc))
                self.state_service.mark_status(self.state, "failed", str(exc))
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        finally:
            self.manifest_service.finalize(manifest_status, error=manifest_error)
            if manifest_status == "failed" and self.stage in ("provision", "configure", "deploy"):
                logger.warning(
                    "Resources created so far are left in place. "
                    "Run again with --resume to continue from the last completed step."
                )
