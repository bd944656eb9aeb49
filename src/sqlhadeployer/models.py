"""Shared domain models for SQLHA Deployer."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .constants import PROBE_PORT, TRANSIENT_FAILURE_PATTERNS


@dataclass(frozen=True)
class RetryPolicy:
    """Per-call retry declaration: how often, how long, and for which errors."""

    max_attempts: int = 1
    backoff_seconds: float = 0.0
    multiplier: float = 1.0
    max_backoff_seconds: float = 300.0
    transient_patterns: Tuple[str, ...] = TRANSIENT_FAILURE_PATTERNS
    retry_any_failure: bool = False

    def delay_for(self, attempt: int) -> float:
        delay = self.backoff_seconds * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_backoff_seconds)


FAIL_FAST = RetryPolicy()


@dataclass(frozen=True)
class WaitPolicy:
    """Bounded poll-until-condition policy with exponential backoff."""

    timeout_seconds: float = 900.0
    initial_interval: float = 5.0
    multiplier: float = 2.0
    max_interval: float = 60.0


@dataclass(frozen=True)
class DiskSpec:
    role: str
    size_gb: int
    sku: str = "Premium_LRS"
    caching: str = "ReadOnly"
    lun: Optional[int] = None


def default_disks() -> Tuple[DiskSpec, ...]:
    return (
        DiskSpec(role="os", size_gb=256, caching="ReadWrite"),
        DiskSpec(role="data", size_gb=512, caching="ReadOnly", lun=0),
        DiskSpec(role="log", size_gb=256, caching="None", lun=1),
        DiskSpec(role="temp", size_gb=128, caching="ReadOnly", lun=2),
    )


@dataclass(frozen=True)
class RunSettings:
    """Every input a run needs, keyed by an explicit run identifier."""

    run_id: str
    location: str = "eastus2"
    resource_prefix: str = "sqlha"
    vm_prefix: str = "sqlvm"
    vm_size: str = "Standard_D4s_v3"
    image: str = "MicrosoftSQLServer:SQL2019-WS2022:Standard:latest"
    admin_username: str = "sqladmin"
    license_type: str = "PAYG"
    address_prefix: str = "10.0.0.0/16"
    subnet_prefix: str = "10.0.0.0/24"
    listener_ip: str = "10.0.0.10"
    ag_name: str = "SQLAG"
    listener_name: str = "sqlhagrp"
    lb_name: str = "lb-sqlha"
    probe_port: int = PROBE_PORT
    ag_mode: str = "managed"
    disks: Tuple[DiskSpec, ...] = field(default_factory=default_disks)
    registration_retry: RetryPolicy = RetryPolicy(
        max_attempts=3, backoff_seconds=30.0, retry_any_failure=True
    )
    transient_retry: RetryPolicy = RetryPolicy(max_attempts=3, backoff_seconds=10.0, multiplier=2.0)
    wait_policy: WaitPolicy = WaitPolicy()
    command_timeout_seconds: Optional[float] = 1800.0

    def disk(self, role: str) -> DiskSpec:
        for spec in self.disks:
            if spec.role == role:
                return spec
        raise KeyError(f"No disk configured for role: {role}")

    def data_disks(self) -> List[DiskSpec]:
        return [spec for spec in self.disks if spec.role != "os"]


@dataclass(frozen=True)
class DeploymentContext:
    """Names of everything created by provisioning, handed to later stages."""

    run_id: str
    resource_group: str
    location: str
    vnet_name: str
    subnet_name: str
    nsg_name: str
    avset_name: str
    vm_prefix: str
    key_vault_name: str

    @classmethod
    def from_settings(cls, settings: RunSettings) -> "DeploymentContext":
        suffix = f"{settings.resource_prefix}-{settings.run_id}"
        return cls(
            run_id=settings.run_id,
            resource_group=f"rg-{suffix}",
            location=settings.location,
            vnet_name=f"vnet-{suffix}",
            subnet_name=f"snet-{suffix}",
            nsg_name=f"nsg-{suffix}",
            avset_name=f"avset-{suffix}",
            vm_prefix=settings.vm_prefix,
            key_vault_name=f"kv-{suffix}"[:24].rstrip("-"),
        )

    def with_values(self, **changes: Any) -> "DeploymentContext":
        return replace(self, **changes)

    def instance_names(self, count: int = 2) -> List[str]:
        return [f"{self.vm_prefix}{index}" for index in range(1, count + 1)]

    def nic_name(self, vm_name: str) -> str:
        return f"{vm_name}-nic"

    def public_ip_name(self, vm_name: str) -> str:
        return f"{vm_name}-ip"

    def disk_name(self, vm_name: str, role: str) -> str:
        return f"{vm_name}-{role}-disk"

    def storage_account_name(self, purpose: str = "st") -> str:
        base = "".join(ch for ch in self.resource_group if ch.isalnum()).lower()
        return f"{purpose}{base}"[:24]


@dataclass(frozen=True)
class InstanceInfo:
    name: str
    nic_name: str
    private_ip: Optional[str] = None
    public_ip: Optional[str] = None


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    observed: Optional[str] = None
    expected: Optional[str] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "observed": self.observed,
            "expected": self.expected,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ReplicaState:
    replica_server_name: str
    role: str
    availability_mode: str
    failover_mode: str
    connected_state: str
    synchronization_health: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReplicaState":
        return cls(
            replica_server_name=str(row.get("replica_server_name") or ""),
            role=str(row.get("role_desc") or "").upper(),
            availability_mode=str(row.get("availability_mode_desc") or "").upper(),
            failover_mode=str(row.get("failover_mode_desc") or "").upper(),
            connected_state=str(row.get("connected_state_desc") or "").upper(),
            synchronization_health=str(row.get("synchronization_health_desc") or "").upper(),
        )

    @property
    def is_healthy(self) -> bool:
        return self.synchronization_health == "HEALTHY"
