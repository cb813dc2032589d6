"""Administrative capability checks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

from fleet.constants import ADMINS_DOCUMENT
from fleet.exceptions import StorageError
from fleet.storage import DocumentStore
from fleet.utils import log


@dataclass(frozen=True)
class AdminSet:
    """Admins loaded once at startup plus the implicit root identity."""

    admins: FrozenSet[str]
    root_id: Optional[str] = None

    def is_admin(self, tenant_id: str) -> bool:
        if self.root_id is not None and tenant_id == self.root_id:
            return True
        return tenant_id in self.admins


def load_admin_set(store: DocumentStore, root_id: Optional[str]) -> AdminSet:
    data = store.read_document(ADMINS_DOCUMENT, default=None)
    if data is None:
        admins = []
    elif isinstance(data, dict) and isinstance(data.get("admins", []), list):
        admins = data.get("admins", [])
    else:
        raise StorageError("Admins document must be an object with an 'admins' list")
    members = frozenset(str(admin) for admin in admins if admin is not None and str(admin).strip())
    log("DEBUG", f"Loaded {len(members)} admin(s) from document store")
    return AdminSet(admins=members, root_id=root_id)
