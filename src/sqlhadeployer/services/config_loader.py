"""Configuration loader for SQLHA Deployer."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from sqlhadeployer.errors import DeployerError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "location",
        "resource_prefix",
        "run_id",
        "vm_prefix",
        "vm_size",
        "image",
        "admin_username",
        "license_type",
        "address_prefix",
        "subnet_prefix",
        "listener_ip",
        "ag_name",
        "listener_name",
        "lb_name",
        "probe_port",
        "ag_mode",
        "os_disk_gb",
        "data_disk_gb",
        "log_disk_gb",
        "temp_disk_gb",
        "registration_attempts",
        "registration_backoff_seconds",
        "wait_timeout_seconds",
        "command_timeout_seconds",
        "verbose",
        "log_file",
        "handoff_file",
        "state_file",
        "resume",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise DeployerError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise DeployerError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise DeployerError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise DeployerError(f"Unknown configuration keys: {unknown_list}")

        return parsed
