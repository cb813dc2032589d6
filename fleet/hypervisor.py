"""libvirt command driver for the VPS fleet manager.

Every hypervisor action is an argument vector handed straight to the
executable; nothing is ever interpolated into a shell string. The driver
reports success or failure per command and does not interpret output or
check that the hypervisor reached the intended state.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from fleet.constants import MISSING_DOMAIN_MARKERS, VM_NAME_RE
from fleet.exceptions import ValidationError
from fleet.models import DriverResult, FleetConfig, VMSpecs
from fleet.utils import ensure_directory, first_error_line, log, run


class CommandBuilder:
    """Builds argv lists for qemu-img, virt-install and virsh."""

    def __init__(self, libvirt_uri: str, disk_dir: Path, os_variant: str, network: str) -> None:
        self.libvirt_uri = libvirt_uri
        self.disk_dir = Path(disk_dir)
        self.os_variant = os_variant
        self.network = network

    @staticmethod
    def check_name(vm_name: str) -> str:
        if not isinstance(vm_name, str) or not VM_NAME_RE.match(vm_name):
            raise ValidationError(f"Invalid VM name {vm_name!r}")
        return vm_name

    def disk_path(self, vm_name: str) -> Path:
        return self.disk_dir / f"{self.check_name(vm_name)}.qcow2"

    def create_disk(self, vm_name: str, specs: VMSpecs) -> List[str]:
        return ["qemu-img", "create", "-f", "qcow2", str(self.disk_path(vm_name)), f"{int(specs.disk_gib)}G"]

    def install(self, vm_name: str, specs: VMSpecs) -> List[str]:
        return [
            "virt-install",
            "--connect",
            self.libvirt_uri,
            "--name",
            self.check_name(vm_name),
            "--memory",
            str(int(specs.ram_gib) * 1024),
            "--vcpus",
            str(int(specs.vcpu)),
            "--disk",
            f"path={self.disk_path(vm_name)},format=qcow2",
            "--os-variant",
            self.os_variant,
            "--network",
            f"network={self.network}",
            "--graphics",
            "none",
            "--noautoconsole",
            "--import",
        ]

    def virsh(self, action: str, vm_name: str) -> List[str]:
        return ["virsh", "-c", self.libvirt_uri, action, self.check_name(vm_name)]


class HypervisorDriver:
    """Runs one lifecycle command per call with a bounded wait and no retry."""

    def __init__(self, builder: CommandBuilder, timeout: float = 60) -> None:
        self.builder = builder
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: FleetConfig) -> "HypervisorDriver":
        builder = CommandBuilder(cfg.libvirt_uri, cfg.disk_dir, cfg.os_variant, cfg.network)
        return cls(builder, timeout=cfg.command_timeout)

    def _execute(self, cmd: List[str]) -> DriverResult:
        try:
            result = run(cmd, check=False, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            log("WARN", f"{cmd[0]} did not finish within {self.timeout}s")
            return DriverResult(
                success=False,
                error=f"{cmd[0]} timed out after {self.timeout}s",
                timed_out=True,
            )
        except FileNotFoundError:
            return DriverResult(success=False, error=f"{cmd[0]} is not installed")
        except OSError as exc:
            return DriverResult(success=False, error=f"{cmd[0]} could not be executed: {exc}")
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if result.returncode != 0:
            return DriverResult(success=False, output=stdout, error=first_error_line(stdout, stderr))
        return DriverResult(success=True, output=stdout)

    def _remove_disk(self, vm_name: str) -> DriverResult:
        disk = self.builder.disk_path(vm_name)
        try:
            disk.unlink(missing_ok=True)
        except OSError as exc:
            return DriverResult(success=False, error=f"Failed to remove {disk}: {exc}")
        return DriverResult(success=True)

    def _reserve_disk(self, vm_name: str) -> DriverResult:
        """Claim the disk path with an exclusive create; only the claimant may remove it."""
        disk = self.builder.disk_path(vm_name)
        try:
            ensure_directory(disk.parent)
            disk.open("x").close()
        except FileExistsError:
            return DriverResult(success=False, error=f"Disk {disk} already exists")
        except OSError as exc:
            return DriverResult(success=False, error=f"Cannot reserve disk {disk}: {exc}")
        return DriverResult(success=True)

    def create(self, vm_name: str, specs: VMSpecs) -> DriverResult:
        reserved = self._reserve_disk(vm_name)
        if not reserved.success:
            return reserved

        disk_result = self._execute(self.builder.create_disk(vm_name, specs))
        if not disk_result.success:
            if not disk_result.timed_out:
                self._remove_disk(vm_name)
            return disk_result

        install_result = self._execute(self.builder.install(vm_name, specs))
        if not install_result.success and not install_result.timed_out:
            # Nothing but the fresh disk exists yet.
            cleanup = self._remove_disk(vm_name)
            if not cleanup.success:
                log("WARN", cleanup.error)
        return install_result

    def start(self, vm_name: str) -> DriverResult:
        return self._execute(self.builder.virsh("start", vm_name))

    def stop(self, vm_name: str) -> DriverResult:
        return self._execute(self.builder.virsh("destroy", vm_name))

    def destroy(self, vm_name: str) -> DriverResult:
        """Stop, undefine, remove disk. Every step runs even when an earlier one fails."""
        steps = []
        errors = []

        stop_result = self.stop(vm_name)
        # A domain that is not running cannot be stopped; that is fine here.
        steps.append(("stop", stop_result.success))

        undefine_result = self._execute(self.builder.virsh("undefine", vm_name))
        undefined = undefine_result.success or _is_missing_domain(undefine_result)
        steps.append(("undefine", undefined))
        if not undefined:
            errors.append(f"undefine: {undefine_result.error}")

        disk_result = self._remove_disk(vm_name)
        steps.append(("remove-disk", disk_result.success))
        if not disk_result.success:
            errors.append(f"remove-disk: {disk_result.error}")

        timed_out = stop_result.timed_out or undefine_result.timed_out
        return DriverResult(
            success=not errors,
            error="; ".join(errors),
            timed_out=timed_out and not undefined,
            steps=steps,
        )

    def domain_state(self, vm_name: str) -> Optional[str]:
        result = self._execute(self.builder.virsh("domstate", vm_name))
        if not result.success:
            return None
        return result.output.strip().lower() or None


def _is_missing_domain(result: DriverResult) -> bool:
    combined = f"{result.output}\n{result.error}".lower()
    return any(marker in combined for marker in MISSING_DOMAIN_MARKERS)
