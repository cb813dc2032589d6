"""Custom exceptions for the VPS fleet manager."""

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors.

    ``secret`` and ``panel_username`` carry a panel account issued earlier in
    the same failed operation, so the caller can still show it exactly once.
    """

    def __init__(
        self, *args: object, secret: Optional[str] = None, panel_username: Optional[str] = None
    ) -> None:
        super().__init__(*args)
        self.secret = secret
        self.panel_username = panel_username


class ValidationError(ManagerError):
    """Bad input shape or range; the caller can correct it."""


class AuthorizationError(ManagerError):
    """The caller lacks the capability the operation requires."""


class NotFoundError(ManagerError):
    """The referenced VM index or record does not exist."""


class DriverError(ManagerError):
    """A hypervisor command failed; carries the command's diagnostic text."""


class ProvisionError(DriverError):
    """VM creation failed; no inventory record was written."""


class DriverTimeoutError(DriverError):
    """A hypervisor command exceeded its time bound; the VM state is unknown."""


class StorageError(ManagerError):
    """The persistence layer failed; fatal to the current operation."""
