"""Panel credential issuance for tenants."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from fleet.constants import ACCOUNTS_DOCUMENT, PANEL_USERNAME_PREFIX
from fleet.exceptions import StorageError, ValidationError
from fleet.models import IssuedCredential, TenantAccount
from fleet.storage import DocumentStore
from fleet.utils import generate_password, hash_password, log, verify_password


def panel_username_for(tenant_id: str) -> str:
    return f"{PANEL_USERNAME_PREFIX}{tenant_id}"


class CredentialIssuer:
    """Creates one panel account per tenant and never regenerates it.

    Accounts and the username -> tenant index share one document so both
    are replaced in the same atomic write, taken under the accounts document
    lock so concurrent processes never issue two secrets for one tenant.
    Only the bcrypt hash is stored; the plaintext secret is handed back once,
    from the call that created it.
    """

    def __init__(self, store: DocumentStore, bcrypt_rounds: int = 12, password_length: int = 12) -> None:
        self.store = store
        self.bcrypt_rounds = bcrypt_rounds
        self.password_length = password_length

    def _load(self) -> Tuple[Dict[str, Any], Dict[str, str]]:
        data = self.store.read_document(ACCOUNTS_DOCUMENT, default=None) or {}
        accounts = data.get("accounts", {}) if isinstance(data, dict) else None
        usernames = data.get("usernames", {}) if isinstance(data, dict) else None
        if not isinstance(accounts, dict) or not isinstance(usernames, dict):
            raise StorageError("Accounts document is malformed")
        return accounts, usernames

    def get_account(self, tenant_id: str) -> Optional[TenantAccount]:
        accounts, _ = self._load()
        raw = accounts.get(tenant_id)
        return TenantAccount.from_dict(raw) if raw is not None else None

    def issue_if_absent(self, tenant_id: str) -> IssuedCredential:
        if not isinstance(tenant_id, str) or not tenant_id.strip():
            raise ValidationError("Tenant id must be a non-empty string")
        with self.store.lock(ACCOUNTS_DOCUMENT):
            accounts, usernames = self._load()
            existing = accounts.get(tenant_id)
            if existing is not None:
                return IssuedCredential(account=TenantAccount.from_dict(existing))

            username = panel_username_for(tenant_id)
            owner = usernames.get(username)
            if owner is not None and owner != tenant_id:
                raise StorageError(f"Panel username {username} is already mapped to another tenant")

            secret = generate_password(self.password_length)
            account = TenantAccount(
                tenant_id=tenant_id,
                panel_username=username,
                panel_password_hash=hash_password(secret, rounds=self.bcrypt_rounds),
            )
            accounts[tenant_id] = account.to_dict()
            usernames[username] = tenant_id
            self.store.write_document(ACCOUNTS_DOCUMENT, {"accounts": accounts, "usernames": usernames})
        log("INFO", f"Issued panel account {username} for tenant {tenant_id}")
        return IssuedCredential(account=account, secret=secret)

    def authenticate(self, username: str, password: str) -> Optional[TenantAccount]:
        accounts, usernames = self._load()
        tenant_id = usernames.get(username)
        if tenant_id is None or tenant_id not in accounts:
            return None
        account = TenantAccount.from_dict(accounts[tenant_id])
        if not verify_password(password, account.panel_password_hash):
            return None
        return account
