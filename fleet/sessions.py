"""Panel sessions: authenticated tokens mapped to tenants."""

from __future__ import annotations

import secrets
import threading
from typing import Dict, Optional

from fleet.credentials import CredentialIssuer
from fleet.exceptions import AuthorizationError
from fleet.utils import log


class SessionRegistry:
    """In-memory session table; the panel passes ``resolve(token)`` as the caller id."""

    def __init__(self, issuer: CredentialIssuer) -> None:
        self.issuer = issuer
        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def login(self, username: str, password: str) -> Optional[str]:
        account = self.issuer.authenticate(username, password)
        if account is None:
            log("DEBUG", f"Rejected panel login for {username}")
            return None
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions[token] = account.tenant_id
        log("INFO", f"Panel login for {username}")
        return token

    def resolve(self, token: str) -> str:
        with self._lock:
            tenant_id = self._sessions.get(token)
        if tenant_id is None:
            raise AuthorizationError("Invalid session")
        return tenant_id

    def logout(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)
