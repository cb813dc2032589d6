"""Global constants and path configuration for the VPS fleet manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path("/etc/vps-fleet/fleet.yaml")

# Default location of the JSON documents (accounts, admins, per-tenant inventory).
DEFAULT_DATA_DIR = Path("/var/lib/vps-fleet")
# Backing qcow2 disks live next to libvirt's default pool.
DEFAULT_DISK_DIR = Path("/var/lib/libvirt/images")
DEFAULT_LIBVIRT_URI = "qemu:///system"
TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_COMMAND_TIMEOUT = 60
DEFAULT_VM_NAME_PREFIX = "vps"
DEFAULT_OS_VARIANT = "ubuntu20.04"
DEFAULT_NETWORK = "default"
DEFAULT_BCRYPT_ROUNDS = 12
DEFAULT_PASSWORD_LENGTH = 12
MIN_PASSWORD_LENGTH = 8
DEFAULT_PANEL_URL = "http://localhost:3001"

# Upper bounds for a single VM request.
DEFAULT_MAX_RAM_GIB = 512
DEFAULT_MAX_VCPU = 64
DEFAULT_MAX_DISK_GIB = 4096

ACCOUNTS_DOCUMENT = "accounts"
ADMINS_DOCUMENT = "admins"
INVENTORY_DOCUMENT_PREFIX = "vps-"
PANEL_USERNAME_PREFIX = "user"

DOCUMENT_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
SAFE_TENANT_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_VM_NAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9-]")

PASSWORD_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

# virsh answers that mean the domain is already gone.
MISSING_DOMAIN_MARKERS = (
    "domain not found",
    "failed to get domain",
    "no domain with matching name",
    "domain does not exist",
)

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}
