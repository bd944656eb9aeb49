"""Actionable error catalog for SQLHA Deployer."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "handoff_not_found": {
        "what": "Deployment variables file not found: {path}",
        "next": "Run `sqlhadeployer provision` first or pass `--handoff-file` pointing to its output.",
    },
    "handoff_incomplete": {
        "what": "Deployment variables file '{path}' is missing: {keys}",
        "next": "Re-run `sqlhadeployer provision` with `--resume` to regenerate the file.",
    },
    "az_not_found": {
        "what": "The Azure CLI (`az`) was not found on PATH.",
        "next": "Install the Azure CLI and make sure `az --version` works in this shell.",
    },
    "az_too_old": {
        "what": "Azure CLI {found} is older than the required {required}.",
        "next": "Upgrade with `az upgrade` and try again.",
    },
    "registration_failed": {
        "what": "Registering {vm} with the SQL IaaS agent failed after {attempts} attempt(s).",
        "next": "Check the VM is running and retry the stage with `--resume`.",
    },
    "readiness_timeout": {
        "what": "Timed out after {timeout}s waiting for {description}.",
        "next": "Inspect the resource in the portal, then retry the stage with `--resume`.",
    },
    "nic_missing": {
        "what": "Network interface {nic} does not exist in {resource_group}.",
        "next": "Run `sqlhadeployer provision` to completion before configuring the cluster.",
    },
    "unhealthy_before_failover": {
        "what": "Replica {replica} is {health}; planned failover requires every replica to be HEALTHY.",
        "next": "Resume data movement and wait for synchronization, or use forced failover for DR drills.",
    },
    "resume_mismatch": {
        "what": "The state file belongs to a run with different inputs: {fields}.",
        "next": "Pass the same settings as the interrupted run, or remove the state file to start over.",
    },
    "forced_failover_not_allowed": {
        "what": "Forced failover can lose committed transactions.",
        "next": "Pass `--allow-data-loss` to confirm this is a disaster recovery drill.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
