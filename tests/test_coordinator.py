"""Tests for fleet.coordinator module."""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from fleet.exceptions import (
    AuthorizationError,
    DriverError,
    DriverTimeoutError,
    NotFoundError,
    ProvisionError,
    StorageError,
    ValidationError,
)
from fleet.credentials import CredentialIssuer
from fleet.hypervisor import CommandBuilder, HypervisorDriver
from fleet.inventory import InventoryStore
from fleet.models import DriverResult, VMRecord, VMSpecs, VMStatus
from fleet.sessions import SessionRegistry
from fleet.storage import DocumentStore

from tests.conftest import ADMIN, ROOT_ADMIN

TENANT = "42"


def _seed(inventory, tenant_id, *statuses):
    for i, status in enumerate(statuses):
        inventory.append_vm(tenant_id, VMRecord(f"vps-{tenant_id}-{i}", VMSpecs(1, 1, 10), status))


class TestCreate:
    def test_end_to_end_two_creates_share_one_account(self, coordinator, inventory, issuer, driver):
        first = coordinator.create(ROOT_ADMIN, TENANT, VMSpecs(ram_gib=2, vcpu=1, disk_gib=20))
        assert first.ok is True
        assert first.record.status is VMStatus.RUNNING
        assert first.secret is not None
        assert first.panel_username == f"user{TENANT}"
        account = issuer.get_account(TENANT)
        assert account is not None
        assert inventory.list_vms(TENANT) == [first.record]

        second = coordinator.create(ROOT_ADMIN, TENANT, VMSpecs(ram_gib=1, vcpu=1, disk_gib=10))
        assert second.ok is True
        assert second.secret is None
        assert second.panel_username is None
        assert issuer.get_account(TENANT) == account
        assert [r.vm_name for r in inventory.list_vms(TENANT)] == [first.record.vm_name, second.record.vm_name]
        assert driver.actions() == ["create", "create"]

    def test_vm_names_are_pairwise_distinct(self, coordinator):
        with patch("fleet.coordinator.time.time", return_value=1700000000.0):
            names = [coordinator.create(ADMIN, TENANT, VMSpecs(1, 1, 10)).record.vm_name for _ in range(5)]
        assert len(set(names)) == 5
        assert all(name.startswith(f"vps-{TENANT}-") for name in names)

    def test_name_skips_one_already_recorded(self, coordinator, inventory):
        inventory.append_vm(TENANT, VMRecord(f"vps-{TENANT}-1700000000000-abcd", VMSpecs(1, 1, 10), VMStatus.RUNNING))
        with patch("fleet.coordinator.time") as mock_time, patch("fleet.coordinator.secrets") as mock_secrets:
            mock_time.time.return_value = 1700000000.0
            mock_secrets.token_hex.return_value = "abcd"
            result = coordinator.create(ADMIN, TENANT, VMSpecs(1, 1, 10))
        assert result.record.vm_name == f"vps-{TENANT}-1700000000001-abcd"
        assert len(inventory.list_vms(TENANT)) == 2

    def test_coordinators_on_separate_stores_pick_distinct_names(self, fleet_config, driver, admins):
        from fleet.coordinator import LifecycleCoordinator

        barrier = threading.Barrier(2)
        names = []
        names_lock = threading.Lock()

        def worker():
            store = DocumentStore(fleet_config.data_dir)
            coordinator = LifecycleCoordinator(
                fleet_config, InventoryStore(store), CredentialIssuer(store, bcrypt_rounds=4), driver, admins
            )
            barrier.wait()
            result = coordinator.create(ADMIN, TENANT, VMSpecs(1, 1, 10))
            with names_lock:
                names.append(result.record.vm_name)

        # Same clock and same random suffix everywhere: only the recorded names keep them apart.
        with patch("fleet.coordinator.time") as mock_time, patch("fleet.coordinator.secrets") as mock_secrets:
            mock_time.time.return_value = 1700000000.0
            mock_secrets.token_hex.return_value = "abcd"
            threads = [threading.Thread(target=worker) for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert len(names) == 2
        assert len(set(names)) == 2
        recorded = InventoryStore(DocumentStore(fleet_config.data_dir)).list_vms(TENANT)
        assert sorted(r.vm_name for r in recorded) == sorted(names)

    def test_non_admin_is_rejected_without_side_effects(self, coordinator, inventory, issuer, driver):
        with pytest.raises(AuthorizationError):
            coordinator.create(TENANT, TENANT, VMSpecs(1, 1, 10))
        assert inventory.list_vms(TENANT) == []
        assert issuer.get_account(TENANT) is None
        assert driver.calls == []

    @pytest.mark.parametrize("specs", [VMSpecs(0, 1, 10), VMSpecs(1, 0, 10), VMSpecs(1, 1, -5), VMSpecs(65, 1, 10)])
    def test_invalid_specs_fail_before_driver(self, coordinator, driver, issuer, specs):
        with pytest.raises(ValidationError):
            coordinator.create(ROOT_ADMIN, TENANT, specs)
        assert driver.calls == []
        assert issuer.get_account(TENANT) is None

    def test_driver_failure_writes_nothing_but_keeps_secret(self, coordinator, inventory, driver):
        driver.results["create"] = DriverResult(success=False, error="virt-install: no space left")
        with pytest.raises(ProvisionError, match="no space left") as exc:
            coordinator.create(ROOT_ADMIN, TENANT, VMSpecs(1, 1, 10))
        assert inventory.list_vms(TENANT) == []
        assert exc.value.secret is not None
        assert exc.value.panel_username == f"user{TENANT}"

    def test_issuer_storage_failure_blocks_creation(self, coordinator, issuer, driver):
        with patch.object(issuer, "issue_if_absent", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                coordinator.create(ROOT_ADMIN, TENANT, VMSpecs(1, 1, 10))
        assert driver.calls == []

    def test_timeout_raises_driver_timeout(self, coordinator, inventory, driver):
        driver.results["create"] = DriverResult(success=False, error="timed out", timed_out=True)
        with pytest.raises(DriverTimeoutError):
            coordinator.create(ROOT_ADMIN, TENANT, VMSpecs(1, 1, 10))
        assert inventory.list_vms(TENANT) == []

    def test_verify_boot_notes_non_running_state(self, coordinator, driver):
        coordinator.cfg.verify_boot = True
        driver.state = "shut off"
        result = coordinator.create(ROOT_ADMIN, TENANT, VMSpecs(1, 1, 10))
        assert result.ok is True
        assert result.record.status is VMStatus.RUNNING
        assert "shut off" in result.message
        assert driver.actions() == ["create", "domstate"]


class TestStartStop:
    def test_start_updates_status(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.STOPPED)
        result = coordinator.start(TENANT, 0)
        assert result.ok is True
        assert inventory.list_vms(TENANT)[0].status is VMStatus.RUNNING
        assert driver.calls == [("start", f"vps-{TENANT}-0")]

    def test_stop_updates_status(self, coordinator, inventory):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        coordinator.stop(TENANT, 0)
        assert inventory.list_vms(TENANT)[0].status is VMStatus.STOPPED

    def test_out_of_range_index(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        before = inventory.list_vms(TENANT)
        with pytest.raises(NotFoundError):
            coordinator.start(TENANT, 1)
        with pytest.raises(NotFoundError):
            coordinator.stop(TENANT, 5)
        assert inventory.list_vms(TENANT) == before
        assert driver.calls == []

    def test_driver_failure_keeps_status(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.STOPPED)
        driver.results["start"] = DriverResult(success=False, error="error: failed to start domain")
        with pytest.raises(DriverError, match="failed to start domain"):
            coordinator.start(TENANT, 0)
        assert inventory.list_vms(TENANT)[0].status is VMStatus.STOPPED

    def test_only_own_inventory_is_visible(self, coordinator, inventory):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        with pytest.raises(NotFoundError):
            coordinator.stop("someone-else", 0)
        assert inventory.list_vms(TENANT)[0].status is VMStatus.RUNNING

    def test_concurrent_start_and_stop_serialise(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.RUNNING, VMStatus.RUNNING)
        applied = []
        barrier = threading.Barrier(2)

        def respond(action):
            def _respond(vm_name):
                time.sleep(0.05)
                applied.append(action)
                return DriverResult(success=True)

            return _respond

        driver.results["start"] = respond("start")
        driver.results["stop"] = respond("stop")

        def worker(op):
            barrier.wait()
            op(TENANT, 0)

        threads = [
            threading.Thread(target=worker, args=(coordinator.start,)),
            threading.Thread(target=worker, args=(coordinator.stop,)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        records = inventory.list_vms(TENANT)
        expected = VMStatus.RUNNING if applied[-1] == "start" else VMStatus.STOPPED
        assert len(applied) == 2
        assert len(records) == 2
        assert records[0].status is expected
        assert records[1].status is VMStatus.RUNNING

    def test_concurrent_updates_to_different_records_are_not_lost(self, coordinator, inventory):
        _seed(inventory, TENANT, *([VMStatus.RUNNING] * 6))
        threads = [threading.Thread(target=coordinator.stop, args=(TENANT, i)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)
        assert [r.status for r in inventory.list_vms(TENANT)] == [VMStatus.STOPPED] * 6


class TestDelete:
    def test_requires_admin(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        with pytest.raises(AuthorizationError):
            coordinator.delete(TENANT, 0)
        assert len(inventory.list_vms(TENANT)) == 1
        assert driver.calls == []

    def test_removes_record_of_target_tenant(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.STOPPED, VMStatus.RUNNING)
        result = coordinator.delete(ADMIN, 0, TENANT)
        assert result.ok is True
        assert result.record.status is VMStatus.DELETED
        assert [r.vm_name for r in inventory.list_vms(TENANT)] == [f"vps-{TENANT}-1"]
        assert driver.calls == [("destroy", f"vps-{TENANT}-0")]

    def test_defaults_to_callers_own_list(self, coordinator, inventory):
        _seed(inventory, ADMIN, VMStatus.RUNNING)
        coordinator.delete(ADMIN, 0)
        assert inventory.list_vms(ADMIN) == []

    def test_missing_index(self, coordinator, driver):
        with pytest.raises(NotFoundError):
            coordinator.delete(ADMIN, 0, TENANT)
        assert driver.calls == []

    def test_record_removed_when_disk_removal_fails(self, fleet_config, inventory, issuer, admins, tmp_path):
        from fleet.coordinator import LifecycleCoordinator

        builder = CommandBuilder(fleet_config.libvirt_uri, tmp_path / "images", "ubuntu20.04", "default")
        real_driver = HypervisorDriver(builder, timeout=5)
        coordinator = LifecycleCoordinator(fleet_config, inventory, issuer, real_driver, admins)
        _seed(inventory, TENANT, VMStatus.RUNNING)

        with (
            patch.object(real_driver, "_execute", return_value=DriverResult(success=True)) as mock_exec,
            patch.object(
                real_driver, "_remove_disk", return_value=DriverResult(success=False, error="permission denied")
            ),
        ):
            result = coordinator.delete(ROOT_ADMIN, 0, TENANT)

        assert mock_exec.call_count == 2  # virsh destroy, virsh undefine
        assert result.ok is True
        assert "cleanup incomplete" in result.message
        assert inventory.list_vms(TENANT) == []

    def test_cleanup_timeout_is_reported_as_pending(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        driver.results["destroy"] = DriverResult(success=False, error="virsh timed out after 60s", timed_out=True)
        with pytest.raises(DriverTimeoutError, match="may still exist"):
            coordinator.delete(ADMIN, 0, TENANT)
        assert inventory.list_vms(TENANT) == []

    def test_cleanup_timeout_through_invoke(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        driver.results["destroy"] = DriverResult(success=False, error="virsh timed out after 60s", timed_out=True)
        with patch("fleet.coordinator.log"):
            result = coordinator.invoke("delete", ADMIN, ["1"], TENANT)
        assert result.ok is False
        assert result.pending is True
        assert result.error == "DriverTimeoutError"
        assert inventory.list_vms(TENANT) == []


class TestListAndStats:
    def test_list_empty(self, coordinator):
        result = coordinator.list_vms(TENANT)
        assert result.ok is True
        assert result.records == []
        assert "No VPS found" in result.message

    def test_stats_counts_tenants_and_vms(self, coordinator, inventory):
        _seed(inventory, TENANT, VMStatus.RUNNING, VMStatus.STOPPED)
        _seed(inventory, "77", VMStatus.RUNNING)
        result = coordinator.stats(ROOT_ADMIN)
        assert result.message == "Total Users: 2, Total VPS: 3"

    def test_stats_uses_inventory_count(self, coordinator, inventory):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        with patch.object(inventory, "count_vms", return_value=7) as mock_count:
            result = coordinator.stats(ADMIN)
        mock_count.assert_called_once_with()
        assert result.message == "Total Users: 1, Total VPS: 7"

    def test_stats_admin_only(self, coordinator):
        with pytest.raises(AuthorizationError):
            coordinator.stats(TENANT)


class TestInvoke:
    def test_create_with_mention(self, coordinator):
        result = coordinator.invoke("create", ROOT_ADMIN, ["2", "1", "20"], TENANT)
        assert result.ok is True
        assert result.secret is not None

    def test_create_usage_error(self, coordinator):
        result = coordinator.invoke("create", ROOT_ADMIN, ["2", "1"], TENANT)
        assert result.ok is False
        assert result.error == "ValidationError"
        assert "Usage" in result.message

    def test_non_numeric_size(self, coordinator, driver):
        result = coordinator.invoke("create", ROOT_ADMIN, ["two", "1", "20"], TENANT)
        assert result.error == "ValidationError"
        assert driver.calls == []

    def test_unauthorised_is_not_logged_as_error(self, coordinator):
        with patch("fleet.coordinator.log") as mock_log:
            result = coordinator.invoke("create", TENANT, ["2", "1", "20"], TENANT)
        assert result.ok is False
        assert result.error == "AuthorizationError"
        assert all(call.args[0] == "DEBUG" for call in mock_log.call_args_list)

    def test_start_uses_one_based_numbers(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.STOPPED, VMStatus.STOPPED)
        result = coordinator.invoke("start", TENANT, ["2"])
        assert result.ok is True
        assert driver.calls == [("start", f"vps-{TENANT}-1")]

    @pytest.mark.parametrize("raw", ["0", "-1", "3"])
    def test_invalid_vps_number(self, coordinator, inventory, raw):
        _seed(inventory, TENANT, VMStatus.STOPPED, VMStatus.STOPPED)
        result = coordinator.invoke("stop", TENANT, [raw])
        assert result.ok is False
        assert result.error == "NotFoundError"

    def test_driver_error_passes_message_through(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        driver.results["stop"] = DriverResult(success=False, error="error: domain is not running")
        result = coordinator.invoke("stop", TENANT, ["1"])
        assert result.ok is False
        assert result.error == "DriverError"
        assert "domain is not running" in result.message
        assert inventory.list_vms(TENANT)[0].status is VMStatus.RUNNING

    def test_timeout_is_pending(self, coordinator, inventory, driver):
        _seed(inventory, TENANT, VMStatus.STOPPED)
        driver.results["start"] = DriverResult(success=False, error="timed out", timed_out=True)
        result = coordinator.invoke("start", TENANT, ["1"])
        assert result.ok is False
        assert result.pending is True
        assert inventory.list_vms(TENANT)[0].status is VMStatus.STOPPED

    def test_storage_error_is_reported(self, coordinator, inventory):
        with patch.object(inventory, "list_vms", side_effect=StorageError("corrupt")), patch(
            "fleet.coordinator.log"
        ) as mock_log:
            result = coordinator.invoke("list", TENANT)
        assert result.ok is False
        assert result.error == "StorageError"
        mock_log.assert_called_once_with("ERROR", "list failed: corrupt")

    def test_delete_with_target(self, coordinator, inventory):
        _seed(inventory, TENANT, VMStatus.RUNNING)
        result = coordinator.invoke("delete", ADMIN, ["1"], TENANT)
        assert result.ok is True
        assert inventory.list_vms(TENANT) == []

    def test_unknown_operation(self, coordinator):
        result = coordinator.invoke("reboot", TENANT, ["1"])
        assert result.ok is False
        assert "Unknown command" in result.message


class TestInvokeForSession:
    def test_runs_as_session_tenant(self, coordinator, inventory, issuer):
        secret = issuer.issue_if_absent(TENANT).secret
        _seed(inventory, TENANT, VMStatus.RUNNING)
        sessions = SessionRegistry(issuer)
        token = sessions.login(f"user{TENANT}", secret)
        result = coordinator.invoke_for_session(sessions, token, "list")
        assert result.ok is True
        assert [r.vm_name for r in result.records] == [f"vps-{TENANT}-0"]

    def test_session_tenant_cannot_act_as_admin(self, coordinator, issuer, driver):
        secret = issuer.issue_if_absent(TENANT).secret
        sessions = SessionRegistry(issuer)
        token = sessions.login(f"user{TENANT}", secret)
        result = coordinator.invoke_for_session(sessions, token, "create", ["2", "1", "20"], "77")
        assert result.error == "AuthorizationError"
        assert driver.calls == []

    def test_logged_out_token_is_rejected(self, coordinator, inventory, issuer, driver):
        secret = issuer.issue_if_absent(TENANT).secret
        _seed(inventory, TENANT, VMStatus.STOPPED)
        sessions = SessionRegistry(issuer)
        token = sessions.login(f"user{TENANT}", secret)
        sessions.logout(token)
        result = coordinator.invoke_for_session(sessions, token, "start", ["1"])
        assert result.ok is False
        assert result.error == "AuthorizationError"
        assert driver.calls == []
        assert inventory.list_vms(TENANT)[0].status is VMStatus.STOPPED
