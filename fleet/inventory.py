"""Per-tenant VM inventory backed by the document store."""

from __future__ import annotations

from typing import Any, List

from fleet.constants import INVENTORY_DOCUMENT_PREFIX
from fleet.exceptions import StorageError
from fleet.models import VMRecord, VMStatus
from fleet.storage import DocumentLock, DocumentStore
from fleet.utils import log, tenant_key


class InventoryStore:
    """Ordered VM records per tenant, one document per tenant.

    Every mutation is a read-modify-write of the tenant's latest persisted
    snapshot under that tenant's document lock. The lock is re-entrant and
    also held against other processes, so the coordinator can keep a tenant
    across a whole lifecycle operation while the store's own methods lock
    again.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def tenant_lock(self, tenant_id: str) -> DocumentLock:
        return self.store.lock(self._document_name(tenant_id))

    @staticmethod
    def _document_name(tenant_id: str) -> str:
        return f"{INVENTORY_DOCUMENT_PREFIX}{tenant_key(tenant_id)}"

    def _load(self, tenant_id: str) -> List[VMRecord]:
        data = self.store.read_document(self._document_name(tenant_id), default=None)
        if data is None:
            return []
        if not isinstance(data, dict) or not isinstance(data.get("vms"), list):
            raise StorageError(f"Inventory for tenant {tenant_id} is malformed")
        if data.get("tenantId") != tenant_id:
            raise StorageError(f"Inventory document for tenant {tenant_id} belongs to {data.get('tenantId')!r}")
        return [VMRecord.from_dict(item) for item in data["vms"]]

    def _save(self, tenant_id: str, records: List[VMRecord]) -> None:
        self.store.write_document(
            self._document_name(tenant_id),
            {"tenantId": tenant_id, "vms": [record.to_dict() for record in records]},
        )

    def list_vms(self, tenant_id: str) -> List[VMRecord]:
        with self.tenant_lock(tenant_id):
            return self._load(tenant_id)

    def append_vm(self, tenant_id: str, record: VMRecord) -> None:
        with self.tenant_lock(tenant_id):
            records = self._load(tenant_id)
            if any(existing.vm_name == record.vm_name for existing in records):
                raise StorageError(f"VM name {record.vm_name} already recorded for tenant {tenant_id}")
            records.append(record)
            self._save(tenant_id, records)
        log("DEBUG", f"Recorded {record.vm_name} for tenant {tenant_id}")

    def update_vm_at(self, tenant_id: str, index: int, **changes: Any) -> bool:
        """Apply a partial update; only ``status`` may change. False when ``index`` is out of range."""
        unsupported = set(changes) - {"status"}
        if unsupported:
            raise ValueError(f"Immutable VM record fields: {', '.join(sorted(unsupported))}")
        with self.tenant_lock(tenant_id):
            records = self._load(tenant_id)
            if not 0 <= index < len(records):
                return False
            if "status" in changes:
                records[index] = records[index].with_status(VMStatus(changes["status"]))
            self._save(tenant_id, records)
            return True

    def remove_vm_at(self, tenant_id: str, index: int) -> bool:
        with self.tenant_lock(tenant_id):
            records = self._load(tenant_id)
            if not 0 <= index < len(records):
                return False
            del records[index]
            self._save(tenant_id, records)
            return True

    def tenants(self) -> List[str]:
        tenant_ids = []
        for name in self.store.list_documents(INVENTORY_DOCUMENT_PREFIX):
            data = self.store.read_document(name, default=None)
            if isinstance(data, dict) and isinstance(data.get("tenantId"), str):
                tenant_ids.append(data["tenantId"])
        return sorted(tenant_ids)

    def count_vms(self) -> int:
        return sum(len(self.list_vms(tenant_id)) for tenant_id in self.tenants())
