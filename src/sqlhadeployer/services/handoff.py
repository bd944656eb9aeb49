"""Shell-sourceable hand-off file shared between deployment stages."""

import os
import re
import shlex
import sys
from dataclasses import fields
from typing import Any, Dict, Optional

from sqlhadeployer.constants import HANDOFF_FILE_MODE
from sqlhadeployer.errors import DeployerError
from sqlhadeployer.errors_catalog import actionable_error
from sqlhadeployer.models import DeploymentContext, RunSettings
from sqlhadeployer.services.atomic_file import write_text_atomic

EXPORT_KEYS = {
    "run_id": "RUN_ID",
    "resource_group": "RESOURCE_GROUP",
    "location": "LOCATION",
    "vnet_name": "VNET_NAME",
    "subnet_name": "SUBNET_NAME",
    "nsg_name": "NSG_NAME",
    "avset_name": "AVSET_NAME",
    "vm_prefix": "VM_PREFIX",
    "key_vault_name": "KV_NAME",
}

# Cluster settings chosen at provisioning; optional for files written by older runs.
CLUSTER_KEYS = {
    "ag_mode": "AG_MODE",
    "ag_name": "AG_NAME",
    "listener_name": "LISTENER_NAME",
    "listener_ip": "LISTENER_IP",
    "lb_name": "LB_NAME",
    "probe_port": "PROBE_PORT",
}

_EXPORT_LINE = re.compile(r"^\s*(?:export\s+)?([A-Z_][A-Z0-9_]*)=(.*)$")


class HandoffService:
    """Writes and reads the `export KEY="value"` file produced by provisioning."""

    def __init__(self, handoff_file: str, logger):
        self.handoff_file = handoff_file
        self.logger = logger

    def render(self, context: DeploymentContext, settings: Optional[RunSettings] = None) -> str:
        lines = ["#!/bin/bash", "# SQL HA deployment variables"]
        for attr, key in EXPORT_KEYS.items():
            lines.append(f"export {key}={shlex.quote(str(getattr(context, attr)))}")
        if settings is not None:
            for attr, key in CLUSTER_KEYS.items():
                lines.append(f"export {key}={shlex.quote(str(getattr(settings, attr)))}")
        return "\n".join(lines) + "\n"

    def write(self, context: DeploymentContext, settings: Optional[RunSettings] = None) -> str:
        try:
            write_text_atomic(self.handoff_file, self.render(context, settings), prefix="handoff-")
        except OSError as exc:
            raise DeployerError(
                f"Could not write deployment variables '{self.handoff_file}': {exc}"
            ) from exc

        if sys.platform != "win32":
            try:
                os.chmod(self.handoff_file, HANDOFF_FILE_MODE)
            except OSError as exc:
                self.logger.warning("Could not set permissions on %s: %s", self.handoff_file, exc)

        self.logger.info("Deployment variables written to %s", self.handoff_file)
        return self.handoff_file

    def parse(self, content: str) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for line in content.splitlines():
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            match = _EXPORT_LINE.match(line)
            if not match:
                continue
            key, raw_value = match.groups()
            parts = shlex.split(raw_value, posix=True)
            values[key] = parts[0] if parts else ""
        return values

    def _read_values(self) -> Dict[str, str]:
        if not os.path.exists(self.handoff_file):
            raise DeployerError(actionable_error("handoff_not_found", path=self.handoff_file))

        try:
            with open(self.handoff_file, "r", encoding="utf-8") as file_obj:
                values = self.parse(file_obj.read())
        except (OSError, ValueError) as exc:
            raise DeployerError(
                f"Could not read deployment variables '{self.handoff_file}': {exc}"
            ) from exc
        return values

    def read(self) -> DeploymentContext:
        values = self._read_values()
        missing = [key for key in EXPORT_KEYS.values() if not values.get(key)]
        if missing:
            raise DeployerError(
                actionable_error(
                    "handoff_incomplete",
                    path=self.handoff_file,
                    keys=", ".join(missing),
                )
            )

        kwargs = {field.name: values[EXPORT_KEYS[field.name]] for field in fields(DeploymentContext)}
        return DeploymentContext(**kwargs)

    def read_cluster_settings(self) -> Dict[str, Any]:
        """Cluster settings recorded at provisioning, keyed like RunSettings fields."""
        values = self._read_values()
        settings: Dict[str, Any] = {}
        for attr, key in CLUSTER_KEYS.items():
            if values.get(key):
                settings[attr] = values[key]
        return settings
