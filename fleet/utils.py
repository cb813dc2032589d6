"""Utility functions for the VPS fleet manager."""

from __future__ import annotations

import hashlib
import os
import secrets
import subprocess
from pathlib import Path
from typing import List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from fleet.constants import (
    _LOG_VERBOSE,
    _VM_NAME_UNSAFE_RE,
    MIN_PASSWORD_LENGTH,
    PASSWORD_ALPHABET,
    SAFE_TENANT_KEY_RE,
)
from fleet.exceptions import ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    """Coerce a config value to int, enforcing bounds."""
    if isinstance(raw, bool):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def generate_password(length: int = 12) -> str:
    """Return a random alphanumeric secret from the OS CSPRNG."""
    if length < MIN_PASSWORD_LENGTH:
        raise ManagerError(f"Password length must be >= {MIN_PASSWORD_LENGTH} (got {length})")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str, rounds: int = 12) -> str:
    """Generate a salted bcrypt hash."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


def tenant_key(tenant_id: str) -> str:
    """Filesystem-safe key for a tenant id: the id itself when safe, else its SHA-256."""
    if SAFE_TENANT_KEY_RE.match(tenant_id):
        return tenant_id
    return hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()


def sanitize_name_component(value: str) -> str:
    """Return a hypervisor-safe name fragment."""
    safe = _VM_NAME_UNSAFE_RE.sub("-", value).strip("-")
    return safe[:32] or "tenant"


def first_error_line(stdout: str, stderr: str) -> str:
    for source in (stderr, stdout):
        if not source:
            continue
        for raw_line in source.splitlines():
            line = raw_line.strip()
            if line:
                return line
    return "unknown error"


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
