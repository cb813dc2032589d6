"""Data models for the VPS fleet manager."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fleet.exceptions import StorageError, ValidationError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class VMStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETED = "deleted"


# Re-asserting Running/Stopped is allowed: the hypervisor may have drifted
# from the persisted status and a successful command confirms the target.
ALLOWED_TRANSITIONS = {
    VMStatus.PROVISIONING: {VMStatus.RUNNING},
    VMStatus.RUNNING: {VMStatus.RUNNING, VMStatus.STOPPED, VMStatus.DELETED},
    VMStatus.STOPPED: {VMStatus.RUNNING, VMStatus.STOPPED, VMStatus.DELETED},
    VMStatus.DELETED: set(),
}


@dataclass(frozen=True)
class VMSpecs:
    ram_gib: int
    vcpu: int
    disk_gib: int

    def validate(self, max_ram_gib: int, max_vcpu: int, max_disk_gib: int) -> "VMSpecs":
        limits = (
            ("ram", self.ram_gib, max_ram_gib),
            ("cpu", self.vcpu, max_vcpu),
            ("disk", self.disk_gib, max_disk_gib),
        )
        for label, value, upper in limits:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{label} must be a positive integer (got {value!r})")
            if value < 1:
                raise ValidationError(f"{label} must be a positive integer (got {value})")
            if value > upper:
                raise ValidationError(f"{label} must be <= {upper} (got {value})")
        return self

    def to_dict(self) -> Dict[str, int]:
        return {"ram": self.ram_gib, "cpu": self.vcpu, "disk": self.disk_gib}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMSpecs":
        return cls(ram_gib=data["ram"], vcpu=data["cpu"], disk_gib=data["disk"])

    def describe(self) -> str:
        return f"{self.ram_gib}GB RAM, {self.vcpu} CPU, {self.disk_gib}GB Disk"


@dataclass(frozen=True)
class VMRecord:
    vm_name: str
    specs: VMSpecs
    status: VMStatus
    created_at: str = field(default_factory=utc_now)

    def with_status(self, status: VMStatus) -> "VMRecord":
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValidationError(
                f"VM {self.vm_name} cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmName": self.vm_name,
            "specs": self.specs.to_dict(),
            "status": self.status.value,
            "created": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMRecord":
        try:
            return cls(
                vm_name=data["vmName"],
                specs=VMSpecs.from_dict(data["specs"]),
                status=VMStatus(data["status"]),
                created_at=data.get("created", ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Malformed VM record {data!r}: {exc}") from exc


@dataclass(frozen=True)
class TenantAccount:
    tenant_id: str
    panel_username: str
    panel_password_hash: str
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, str]:
        return {
            "tenantId": self.tenant_id,
            "panelUsername": self.panel_username,
            "panelPassword": self.panel_password_hash,
            "created": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantAccount":
        try:
            return cls(
                tenant_id=data["tenantId"],
                panel_username=data["panelUsername"],
                panel_password_hash=data["panelPassword"],
                created_at=data.get("created", ""),
            )
        except (KeyError, TypeError) as exc:
            raise StorageError(f"Malformed account record: {exc}") from exc


@dataclass(frozen=True)
class IssuedCredential:
    """An account plus the plaintext secret, present only when the account was just created."""

    account: TenantAccount
    secret: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return self.secret is not None


@dataclass
class DriverResult:
    success: bool
    output: str = ""
    error: str = ""
    timed_out: bool = False
    steps: List[Tuple[str, bool]] = field(default_factory=list)


@dataclass
class OperationResult:
    ok: bool
    message: str
    record: Optional[VMRecord] = None
    records: List[VMRecord] = field(default_factory=list)
    secret: Optional[str] = None
    panel_username: Optional[str] = None
    pending: bool = False
    error: Optional[str] = None


@dataclass
class FleetConfig:
    data_dir: Path
    disk_dir: Path
    libvirt_uri: str
    root_admin_id: Optional[str]
    command_timeout: int
    vm_name_prefix: str
    os_variant: str
    network: str
    bcrypt_rounds: int
    password_length: int
    max_ram_gib: int
    max_vcpu: int
    max_disk_gib: int
    verify_boot: bool = False
    panel_url: str = "http://localhost:3001"
