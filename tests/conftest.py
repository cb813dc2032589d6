"""Shared test fixtures: temporary document store, low-cost config and a recording driver."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from fleet.authz import AdminSet
from fleet.coordinator import LifecycleCoordinator
from fleet.credentials import CredentialIssuer
from fleet.inventory import InventoryStore
from fleet.models import DriverResult, FleetConfig, VMSpecs
from fleet.storage import DocumentStore

ROOT_ADMIN = "1000"
ADMIN = "2000"

ResultSpec = Union[DriverResult, Callable[[str], DriverResult]]


class RecordingDriver:
    """Stands in for HypervisorDriver; records every call and answers from ``results``."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.results: Dict[str, ResultSpec] = {}
        self.state = "running"
        self._lock = threading.Lock()

    def _answer(self, action: str, vm_name: str) -> DriverResult:
        with self._lock:
            self.calls.append((action, vm_name))
        answer = self.results.get(action, DriverResult(success=True))
        return answer(vm_name) if callable(answer) else answer

    def create(self, vm_name: str, specs: VMSpecs) -> DriverResult:
        return self._answer("create", vm_name)

    def start(self, vm_name: str) -> DriverResult:
        return self._answer("start", vm_name)

    def stop(self, vm_name: str) -> DriverResult:
        return self._answer("stop", vm_name)

    def destroy(self, vm_name: str) -> DriverResult:
        return self._answer("destroy", vm_name)

    def domain_state(self, vm_name: str) -> Optional[str]:
        self._answer("domstate", vm_name)
        return self.state

    def actions(self) -> List[str]:
        return [action for action, _ in self.calls]


@pytest.fixture
def fleet_config(tmp_path) -> FleetConfig:
    """Return a FleetConfig rooted in tmp_path with cheap bcrypt."""
    return FleetConfig(
        data_dir=tmp_path / "data",
        disk_dir=tmp_path / "images",
        libvirt_uri="qemu:///system",
        root_admin_id=ROOT_ADMIN,
        command_timeout=60,
        vm_name_prefix="vps",
        os_variant="ubuntu20.04",
        network="default",
        bcrypt_rounds=4,
        password_length=12,
        max_ram_gib=64,
        max_vcpu=16,
        max_disk_gib=500,
    )


@pytest.fixture
def document_store(fleet_config) -> DocumentStore:
    return DocumentStore(fleet_config.data_dir)


@pytest.fixture
def inventory(document_store) -> InventoryStore:
    return InventoryStore(document_store)


@pytest.fixture
def issuer(document_store) -> CredentialIssuer:
    return CredentialIssuer(document_store, bcrypt_rounds=4)


@pytest.fixture
def driver() -> RecordingDriver:
    return RecordingDriver()


@pytest.fixture
def admins() -> AdminSet:
    return AdminSet(admins=frozenset({ADMIN}), root_id=ROOT_ADMIN)


@pytest.fixture
def coordinator(fleet_config, inventory, issuer, driver, admins) -> LifecycleCoordinator:
    return LifecycleCoordinator(fleet_config, inventory, issuer, driver, admins)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every environment variable load_config() reads.
_CONFIG_ENV_VARS = [
    "FLEET_CONFIG",
    "DATA_DIR",
    "DISK_DIR",
    "LIBVIRT_URI",
    "MAIN_ADMIN_ID",
    "COMMAND_TIMEOUT",
    "VM_NAME_PREFIX",
    "OS_VARIANT",
    "VM_NETWORK",
    "BCRYPT_ROUNDS",
    "PASSWORD_LENGTH",
    "MAX_RAM_GIB",
    "MAX_VCPU",
    "MAX_DISK_GIB",
    "VERIFY_BOOT",
    "PANEL_URL",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every variable load_config() reads and point the default config file at nothing."""
    for key in _CONFIG_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("fleet.config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
