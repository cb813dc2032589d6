"""Configuration loading and environment variable parsing for the VPS fleet manager."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from fleet.constants import (
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONFIG_PATH,
    DEFAULT_DATA_DIR,
    DEFAULT_DISK_DIR,
    DEFAULT_LIBVIRT_URI,
    DEFAULT_MAX_DISK_GIB,
    DEFAULT_MAX_RAM_GIB,
    DEFAULT_MAX_VCPU,
    DEFAULT_NETWORK,
    DEFAULT_OS_VARIANT,
    DEFAULT_PANEL_URL,
    DEFAULT_PASSWORD_LENGTH,
    DEFAULT_VM_NAME_PREFIX,
    MIN_PASSWORD_LENGTH,
    TRUTHY,
    VM_NAME_RE,
)
from fleet.exceptions import ManagerError
from fleet.models import FleetConfig
from fleet.utils import get_env, log, parse_int

# yaml key -> environment variable
_ENV_KEYS = {
    "data_dir": "DATA_DIR",
    "disk_dir": "DISK_DIR",
    "libvirt_uri": "LIBVIRT_URI",
    "root_admin_id": "MAIN_ADMIN_ID",
    "command_timeout": "COMMAND_TIMEOUT",
    "vm_name_prefix": "VM_NAME_PREFIX",
    "os_variant": "OS_VARIANT",
    "network": "VM_NETWORK",
    "bcrypt_rounds": "BCRYPT_ROUNDS",
    "password_length": "PASSWORD_LENGTH",
    "max_ram_gib": "MAX_RAM_GIB",
    "max_vcpu": "MAX_VCPU",
    "max_disk_gib": "MAX_DISK_GIB",
    "verify_boot": "VERIFY_BOOT",
    "panel_url": "PANEL_URL",
}


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional YAML overlay; a missing default file is not an error."""
    explicit = config_path is not None or get_env("FLEET_CONFIG") is not None
    if config_path is None:
        env_path = get_env("FLEET_CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if explicit:
            raise ManagerError(f"Fleet config missing: {config_path}")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Fleet config {config_path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ManagerError(f"Cannot read fleet config {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Fleet config {config_path} must contain a YAML mapping")
    unknown = sorted(set(data) - set(_ENV_KEYS))
    if unknown:
        log("WARN", f"Ignoring unknown fleet config keys: {', '.join(unknown)}")
    return data


def _lookup(file_values: Dict[str, Any], key: str, default: Any) -> Any:
    """Environment wins over the YAML file, which wins over the default."""
    env_value = get_env(_ENV_KEYS[key])
    if env_value is not None:
        return env_value
    return file_values.get(key, default)


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in TRUTHY


def load_config(config_path: Optional[Path] = None) -> FleetConfig:
    values = load_config_file(config_path)

    root_admin = _lookup(values, "root_admin_id", None)
    if root_admin is not None:
        root_admin = str(root_admin).strip() or None
    if root_admin is None:
        log("WARN", "MAIN_ADMIN_ID is not set; only admins listed in the admins document can create VMs")

    prefix = str(_lookup(values, "vm_name_prefix", DEFAULT_VM_NAME_PREFIX)).strip()
    if not VM_NAME_RE.match(prefix) or len(prefix) > 16:
        raise ManagerError(
            f"Invalid VM_NAME_PREFIX '{prefix}'. Use up to 16 letters, digits, '.', '_' or '-'"
        )

    uri = str(_lookup(values, "libvirt_uri", DEFAULT_LIBVIRT_URI)).strip()
    if not uri:
        raise ManagerError("LIBVIRT_URI must not be empty")

    return FleetConfig(
        data_dir=Path(str(_lookup(values, "data_dir", DEFAULT_DATA_DIR))),
        disk_dir=Path(str(_lookup(values, "disk_dir", DEFAULT_DISK_DIR))),
        libvirt_uri=uri,
        root_admin_id=root_admin,
        command_timeout=parse_int(
            "COMMAND_TIMEOUT", _lookup(values, "command_timeout", DEFAULT_COMMAND_TIMEOUT), min_val=1, max_val=3600
        ),
        vm_name_prefix=prefix,
        os_variant=str(_lookup(values, "os_variant", DEFAULT_OS_VARIANT)).strip(),
        network=str(_lookup(values, "network", DEFAULT_NETWORK)).strip(),
        bcrypt_rounds=parse_int(
            "BCRYPT_ROUNDS", _lookup(values, "bcrypt_rounds", DEFAULT_BCRYPT_ROUNDS), min_val=4, max_val=31
        ),
        password_length=parse_int(
            "PASSWORD_LENGTH",
            _lookup(values, "password_length", DEFAULT_PASSWORD_LENGTH),
            min_val=MIN_PASSWORD_LENGTH,
            max_val=128,
        ),
        max_ram_gib=parse_int("MAX_RAM_GIB", _lookup(values, "max_ram_gib", DEFAULT_MAX_RAM_GIB)),
        max_vcpu=parse_int("MAX_VCPU", _lookup(values, "max_vcpu", DEFAULT_MAX_VCPU)),
        max_disk_gib=parse_int("MAX_DISK_GIB", _lookup(values, "max_disk_gib", DEFAULT_MAX_DISK_GIB)),
        verify_boot=_as_bool(_lookup(values, "verify_boot", False)),
        panel_url=str(_lookup(values, "panel_url", DEFAULT_PANEL_URL)).strip(),
    )
