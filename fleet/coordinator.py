"""VM lifecycle orchestration for the VPS fleet manager.

The coordinator is stateless between calls: it re-reads the inventory
before every mutation and holds the affected tenant's lock from that read
until the result is committed, so operations on one tenant are linearised
while different tenants proceed in parallel.
"""

from __future__ import annotations

import secrets
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from fleet.authz import AdminSet
from fleet.credentials import CredentialIssuer
from fleet.exceptions import (
    AuthorizationError,
    DriverError,
    DriverTimeoutError,
    ManagerError,
    NotFoundError,
    ProvisionError,
    StorageError,
    ValidationError,
)
from fleet.hypervisor import HypervisorDriver
from fleet.inventory import InventoryStore
from fleet.models import (
    DriverResult,
    FleetConfig,
    IssuedCredential,
    OperationResult,
    VMRecord,
    VMSpecs,
    VMStatus,
)
from fleet.sessions import SessionRegistry
from fleet.utils import log, sanitize_name_component

CREATE_USAGE = "Usage: create <ram> <cpu> <disk> @user"


class LifecycleCoordinator:
    def __init__(
        self,
        cfg: FleetConfig,
        inventory: InventoryStore,
        issuer: CredentialIssuer,
        driver: HypervisorDriver,
        admins: AdminSet,
    ) -> None:
        self.cfg = cfg
        self.inventory = inventory
        self.issuer = issuer
        self.driver = driver
        self.admins = admins
        self._name_lock = threading.Lock()
        self._last_stamp = 0

    # -- helpers ---------------------------------------------------------

    def _require_admin(self, caller_id: str) -> None:
        if not self.admins.is_admin(caller_id):
            raise AuthorizationError("Admin only!")

    def _next_vm_name(self, tenant_id: str, taken: Sequence[str] = ()) -> str:
        """<prefix>-<tenant>-<epoch ms>-<random>, never one of ``taken``.

        The stamp strictly increases within this process; the random part
        keeps names apart across processes and across tenants whose ids
        sanitise to the same fragment.
        """
        while True:
            with self._name_lock:
                stamp = int(time.time() * 1000)
                if stamp <= self._last_stamp:
                    stamp = self._last_stamp + 1
                self._last_stamp = stamp
            name = f"{self.cfg.vm_name_prefix}-{sanitize_name_component(tenant_id)}-{stamp}-{secrets.token_hex(2)}"
            if name not in taken:
                return name

    @staticmethod
    def _check_index(index: int) -> int:
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError(f"VPS index must be an integer (got {index!r})")
        return index

    @staticmethod
    def _raise_for(
        result: DriverResult, action: str, vm_name: str, credential: Optional[IssuedCredential] = None
    ) -> None:
        issued = _issued_kwargs(credential)
        if result.timed_out:
            raise DriverTimeoutError(
                f"{action} of {vm_name} timed out; its state is unknown until the next status check", **issued
            )
        if not result.success:
            error_cls = ProvisionError if action == "Create" else DriverError
            raise error_cls(f"{action} failed: {result.error}", **issued)

    def _record_at(self, tenant_id: str, index: int) -> VMRecord:
        records = self.inventory.list_vms(tenant_id)
        if not 0 <= index < len(records):
            raise NotFoundError("Invalid VPS number")
        return records[index]

    def _provision(self, tenant_id: str, specs: VMSpecs, credential: IssuedCredential) -> VMRecord:
        """Name, build and record one VM while holding the tenant."""
        with self.inventory.tenant_lock(tenant_id):
            taken = [existing.vm_name for existing in self.inventory.list_vms(tenant_id)]
            vm_name = self._next_vm_name(tenant_id, taken)
            log("INFO", f"Creating {vm_name} ({specs.describe()}) for tenant {tenant_id}")

            result = self.driver.create(vm_name, specs)
            self._raise_for(result, "Create", vm_name, credential)

            record = VMRecord(vm_name=vm_name, specs=specs, status=VMStatus.PROVISIONING).with_status(VMStatus.RUNNING)
            try:
                self.inventory.append_vm(tenant_id, record)
            except StorageError:
                log("ERROR", f"VM {vm_name} was created but could not be recorded")
                raise
        return record

    # -- operations ------------------------------------------------------

    def create(self, caller_id: str, target_tenant_id: Optional[str], specs: VMSpecs) -> OperationResult:
        self._require_admin(caller_id)
        if not target_tenant_id or not str(target_tenant_id).strip():
            raise ValidationError(CREATE_USAGE)
        specs.validate(self.cfg.max_ram_gib, self.cfg.max_vcpu, self.cfg.max_disk_gib)

        credential = self.issuer.issue_if_absent(target_tenant_id)
        try:
            record = self._provision(target_tenant_id, specs, credential)
        except StorageError as exc:
            raise StorageError(str(exc), **_issued_kwargs(credential)) from exc
        vm_name = record.vm_name
        log("SUCCESS", f"Created {vm_name} for tenant {target_tenant_id}")

        message = f"VPS created: {vm_name} ({specs.describe()})"
        if self.cfg.verify_boot:
            state = self.driver.domain_state(vm_name)
            if state != "running":
                log("WARN", f"{vm_name} reports state {state or 'unknown'} after create")
                message += f"; hypervisor reports state '{state or 'unknown'}'"
        if credential.is_new:
            message += f"\nPanel: {self.cfg.panel_url} user {credential.account.panel_username}"
        return OperationResult(
            ok=True,
            message=message,
            record=record,
            secret=credential.secret,
            panel_username=credential.account.panel_username if credential.is_new else None,
        )

    def _set_power(
        self,
        caller_id: str,
        index: int,
        action: Callable[[str], DriverResult],
        verb: str,
        target: VMStatus,
    ) -> OperationResult:
        self._check_index(index)
        with self.inventory.tenant_lock(caller_id):
            record = self._record_at(caller_id, index)
            log("INFO", f"{verb} {record.vm_name}")
            self._raise_for(action(record.vm_name), verb, record.vm_name)
            updated = record.with_status(target)
            if not self.inventory.update_vm_at(caller_id, index, status=target):
                raise NotFoundError("Invalid VPS number")
        log("SUCCESS", f"{record.vm_name} is now {target.value}")
        return OperationResult(ok=True, message=f"VPS {target.value}: {record.vm_name}", record=updated)

    def start(self, caller_id: str, index: int) -> OperationResult:
        return self._set_power(caller_id, index, self.driver.start, "Start", VMStatus.RUNNING)

    def stop(self, caller_id: str, index: int) -> OperationResult:
        return self._set_power(caller_id, index, self.driver.stop, "Stop", VMStatus.STOPPED)

    def delete(self, caller_id: str, index: int, target_tenant_id: Optional[str] = None) -> OperationResult:
        self._require_admin(caller_id)
        self._check_index(index)
        tenant_id = target_tenant_id or caller_id
        with self.inventory.tenant_lock(tenant_id):
            record = self._record_at(tenant_id, index)
            log("INFO", f"Deleting {record.vm_name} of tenant {tenant_id}")
            result = self.driver.destroy(record.vm_name)
            if not result.success:
                log("WARN", f"Cleanup of {record.vm_name} incomplete: {result.error or 'unknown error'}")
            # The record goes regardless of cleanup; a leftover disk is an accepted leak.
            if not self.inventory.remove_vm_at(tenant_id, index):
                raise NotFoundError("Invalid VPS number")
        if result.timed_out:
            raise DriverTimeoutError(
                f"Deleted the record of {record.vm_name}, but hypervisor cleanup timed out;"
                f" the domain and its disk may still exist ({result.error or 'timed out'})"
            )
        log("SUCCESS", f"Deleted {record.vm_name} of tenant {tenant_id}")
        message = f"VPS deleted: {record.vm_name}"
        if not result.success:
            message += f" (cleanup incomplete: {result.error or 'unknown error'})"
        return OperationResult(ok=True, message=message, record=record.with_status(VMStatus.DELETED))

    def list_vms(self, caller_id: str) -> OperationResult:
        records = self.inventory.list_vms(caller_id)
        if not records:
            return OperationResult(ok=True, message="No VPS found. Contact admin.", records=[])
        return OperationResult(ok=True, message=f"{len(records)} VPS", records=records)

    def stats(self, caller_id: str) -> OperationResult:
        self._require_admin(caller_id)
        tenants = self.inventory.tenants()
        return OperationResult(
            ok=True, message=f"Total Users: {len(tenants)}, Total VPS: {self.inventory.count_vms()}"
        )

    # -- dispatcher surface ----------------------------------------------

    def invoke(
        self,
        operation: str,
        caller_id: str,
        args: Sequence[str] = (),
        mentioned_target_id: Optional[str] = None,
    ) -> OperationResult:
        """Run a named operation and turn every failure into a result."""
        try:
            return self._dispatch(operation.lower(), caller_id, list(args), mentioned_target_id)
        except (ValidationError, AuthorizationError, NotFoundError) as exc:
            log("DEBUG", f"{operation} rejected for {caller_id}: {exc}")
            return _failure(exc)
        except DriverTimeoutError as exc:
            log("WARN", str(exc))
            return _failure(exc, pending=True)
        except DriverError as exc:
            log("WARN", str(exc))
            return _failure(exc)
        except ManagerError as exc:
            log("ERROR", f"{operation} failed: {exc}")
            return _failure(exc)

    def invoke_for_session(
        self,
        sessions: SessionRegistry,
        token: str,
        operation: str,
        args: Sequence[str] = (),
        mentioned_target_id: Optional[str] = None,
    ) -> OperationResult:
        """Run an operation as the tenant behind a panel session token."""
        try:
            caller_id = sessions.resolve(token)
        except AuthorizationError as exc:
            log("DEBUG", f"{operation} rejected: {exc}")
            return _failure(exc)
        return self.invoke(operation, caller_id, args, mentioned_target_id)

    def _dispatch(
        self, operation: str, caller_id: str, args: List[str], mentioned_target_id: Optional[str]
    ) -> OperationResult:
        if operation == "create":
            target = mentioned_target_id or (args[3] if len(args) > 3 else None)
            if len(args) < 3 or not target:
                raise ValidationError(CREATE_USAGE)
            ram, cpu, disk = (_parse_int(value, label) for value, label in zip(args[:3], ("ram", "cpu", "disk")))
            return self.create(caller_id, target, VMSpecs(ram_gib=ram, vcpu=cpu, disk_gib=disk))
        if operation in ("list", "myvps"):
            return self.list_vms(caller_id)
        if operation in ("start", "stop", "delete"):
            if not args:
                raise ValidationError(f"Usage: {operation} <number>")
            index = _parse_int(args[0], "VPS number") - 1
            if index < 0:
                raise NotFoundError("Invalid VPS number")
            if operation == "start":
                return self.start(caller_id, index)
            if operation == "stop":
                return self.stop(caller_id, index)
            return self.delete(caller_id, index, mentioned_target_id)
        if operation == "stats":
            return self.stats(caller_id)
        raise ValidationError(f"Unknown command '{operation}'")


def _parse_int(raw: str, label: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{label} must be an integer (got '{raw}')")


def _issued_kwargs(credential: Optional[IssuedCredential]) -> Dict[str, Optional[str]]:
    if credential is None or not credential.is_new:
        return {}
    return {"secret": credential.secret, "panel_username": credential.account.panel_username}


def _failure(exc: ManagerError, pending: bool = False) -> OperationResult:
    return OperationResult(
        ok=False,
        message=str(exc),
        pending=pending,
        error=type(exc).__name__,
        secret=exc.secret,
        panel_username=exc.panel_username,
    )
