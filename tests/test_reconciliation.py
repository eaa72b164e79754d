"""
Tests for the reconciliation loop and entitlement handling.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from hypervisor import AuthError, TaskFailedError, TransportError
from models import Account, Subscription
from orchestration import ReconciliationLoop

NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


@pytest.fixture
def entitled_bob(store):
    """Keep owner 2 out of the no-subscription set."""
    store.update_subscription(2, plan="dual_mode", status="active", expires_at=NOW + timedelta(days=10))
    return store


def expire(store, owner_id, ago, plan="hour_booster"):
    store.update_subscription(owner_id, plan=plan, status="active", expires_at=NOW - ago)


def actions(store, owner_id):
    return [e.action for e in store.list_actions(owner_id)]


class TestExpiredShutdown:
    """Tests for shutting down VMs of expired owners."""

    def test_running_vms_shut_down_and_flag_set(self, loop, store, mock_client, entitled_bob):
        expire(store, 1, timedelta(hours=1))
        store.assign_vm(1, 3001)
        store.assign_vm(1, 3002)
        mock_client.is_running.side_effect = lambda vmid: vmid == 3001

        summary = loop.tick(NOW)

        mock_client.shutdown.assert_called_once_with(3001)
        assert summary["inactive"] == 1
        assert summary["shutdowns"] == 1
        assert actions(store, 1) == ["vm_auto_shutdown_subscription_expired"]
        flags = store.get_subscription(1).flags
        assert flags.shutdown_on_expiry is True
        assert flags.shutdown_on_expiry_at == NOW

    def test_second_tick_is_a_noop(self, loop, store, mock_client, entitled_bob):
        expire(store, 1, timedelta(hours=1))
        store.assign_vm(1, 3001)
        loop.tick(NOW)
        summary = loop.tick(NOW + timedelta(minutes=5))

        assert mock_client.shutdown.call_count == 1
        assert summary["inactive"] == 0
        assert len(store.list_actions(1)) == 1

    def test_owner_without_subscription_flagged_even_without_vms(self, loop, store, mock_client):
        store.update_subscription(1, plan="kd_drop", status="active", expires_at=NOW + timedelta(days=1))
        summary = loop.tick(NOW)

        assert summary["inactive"] == 1
        assert store.get_subscription(2).flags.shutdown_on_no_sub is True
        mock_client.shutdown.assert_not_called()
        assert actions(store, 2) == []

    def test_plan_none_counts_as_no_subscription(self, loop, store, mock_client, entitled_bob):
        store.update_subscription(1, plan="none", status="canceled")
        store.assign_vm(1, 3001)
        loop.tick(NOW)
        assert actions(store, 1) == ["vm_auto_shutdown_no_subscription"]
        assert store.get_subscription(1).flags.shutdown_on_no_sub is True

    def test_admins_are_never_touched(self, loop, store, mock_client, entitled_bob):
        store.update_subscription(1, plan="kd_drop", status="active")
        expire(store, 99, timedelta(days=3))
        store.assign_vm(99, 3050)

        summary = loop.tick(NOW)

        assert summary == {"inactive": 0, "destroyed_owners": 0, "shutdowns": 0, "destroyed_vms": 0, "failures": 0}
        mock_client.is_running.assert_not_called()
        mock_client.destroy.assert_not_called()
        assert store.get_subscription(99).flags.shutdown_on_expiry is False

    def test_vm_error_isolated(self, loop, store, mock_client, entitled_bob):
        expire(store, 1, timedelta(hours=1))
        store.assign_vm(1, 3001)
        store.assign_vm(1, 3002)
        mock_client.shutdown.side_effect = [TransportError("HTTP 500", vmid=3001), MagicMock()]

        summary = loop.tick(NOW)

        assert summary["shutdowns"] == 1
        assert summary["failures"] == 1
        assert mock_client.shutdown.call_count == 2
        assert store.get_subscription(1).flags.shutdown_on_expiry is True

    def test_auth_error_aborts_tick(self, loop, store, mock_client, entitled_bob):
        expire(store, 1, timedelta(hours=1))
        store.assign_vm(1, 3001)
        mock_client.is_running.side_effect = AuthError("ticket refused")

        with pytest.raises(AuthError):
            loop.tick(NOW)
        assert store.get_subscription(1).flags.shutdown_on_expiry is False


class TestDestruction:
    """Tests for destroying VMs of owners expired past the grace period."""

    @pytest.fixture
    def overdue(self, store, entitled_bob):
        expire(store, 1, timedelta(hours=25))
        store.merge_lifecycle_flags(1, lambda f: f.mark_shutdown(no_subscription=False, now=NOW - timedelta(hours=24)))
        store.assign_vm(1, 3001)
        return store

    def test_destroyed_and_unassigned(self, loop, overdue, mock_client):
        summary = loop.tick(NOW)

        mock_client.stop.assert_called_once_with(3001)
        loop._sleep.assert_called_once_with(5)
        mock_client.destroy.assert_called_once_with(3001)
        mock_client.destroy.return_value.wait.assert_called_once()
        assert overdue.list_vm_ids(1) == []
        assert summary["destroyed_owners"] == 1
        assert summary["destroyed_vms"] == 1
        assert actions(overdue, 1) == ["vm_auto_destroyed"]
        flags = overdue.get_subscription(1).flags
        assert flags.destroyed is True
        assert flags.destroyed_at == NOW

    def test_stopped_vm_not_stopped_again(self, loop, overdue, mock_client):
        mock_client.is_running.return_value = False
        loop.tick(NOW)
        mock_client.stop.assert_not_called()
        mock_client.destroy.assert_called_once_with(3001)

    def test_destroy_proceeds_when_stop_fails(self, loop, overdue, mock_client):
        mock_client.stop.side_effect = TransportError("stop refused", vmid=3001)

        summary = loop.tick(NOW)

        mock_client.destroy.assert_called_once_with(3001)
        assert summary["destroyed_vms"] == 1
        assert overdue.list_vm_ids(1) == []
        assert actions(overdue, 1) == ["vm_auto_destroyed"]

    def test_destroy_proceeds_when_status_unknown(self, loop, overdue, mock_client):
        mock_client.is_running.side_effect = TransportError("status failed", vmid=3001)

        loop.tick(NOW)

        mock_client.stop.assert_not_called()
        mock_client.destroy.assert_called_once_with(3001)
        assert overdue.list_vm_ids(1) == []

    def test_failure_recorded_and_not_retried(self, loop, overdue, mock_client):
        mock_client.destroy.return_value.wait.side_effect = TaskFailedError("UPID:d", "locked", vmid=3001)

        summary = loop.tick(NOW)
        loop.tick(NOW + timedelta(hours=1))

        assert summary["failures"] == 1
        assert overdue.list_vm_ids(1) == [3001]
        assert actions(overdue, 1) == ["vm_destruction_failed"]
        assert overdue.get_subscription(1).flags.destroyed is True
        assert mock_client.destroy.call_count == 1

    def test_within_grace_period_kept(self, loop, store, mock_client, entitled_bob):
        expire(store, 1, timedelta(hours=23))
        store.assign_vm(1, 3001)
        loop.tick(NOW)
        mock_client.destroy.assert_not_called()
        assert store.get_subscription(1).flags.destroyed is False


class TestEntitlement:
    """Tests for has_active_subscription."""

    CUSTOMER = Account(owner_id=1, username="alice", account_ref="r")
    ADMIN = Account(owner_id=99, username="root", account_ref="a", role="admin")

    @pytest.mark.parametrize(
        "account, subscription, expected",
        [
            (ADMIN, None, True),
            (CUSTOMER, None, False),
            (CUSTOMER, Subscription(owner_id=1, plan="none"), False),
            (CUSTOMER, Subscription(owner_id=1, plan="kd_drop"), True),
            (CUSTOMER, Subscription(owner_id=1, plan="kd_drop", expires_at=NOW + timedelta(seconds=1)), True),
            (CUSTOMER, Subscription(owner_id=1, plan="kd_drop", expires_at=NOW), False),
        ],
    )
    def test_table(self, loop, account, subscription, expected):
        assert loop.has_active_subscription(account, subscription, NOW) is expected


class TestRenewal:
    """Tests for handle_subscription_renewal."""

    def _renewed(self, store):
        store.update_subscription(1, plan="kd_drop", status="active", expires_at=datetime.now(timezone.utc) + timedelta(days=30))

    def test_clears_exactly_the_markers(self, loop, store):
        store.merge_lifecycle_flags(1, lambda f: f.mark_shutdown(no_subscription=False))
        store.merge_lifecycle_flags(1, lambda f: f.extra.update({"crm_segment": "gold"}))
        self._renewed(store)

        result = loop.handle_subscription_renewal(1)

        assert result.renewed is True
        assert result.was_shutdown is True
        assert result.was_destroyed is False
        assert result.reprovision_required is False
        flags = store.get_subscription(1).flags
        assert flags.shutdown_on_expiry is False
        assert flags.shutdown_on_expiry_at is None
        assert flags.vm_access_restored is True
        assert flags.renewed_at is not None
        assert flags.extra == {"crm_segment": "gold"}
        assert actions(store, 1) == ["subscription_renewed_vm_access_restored"]

    def test_destroyed_owner_needs_reprovisioning(self, loop, store, mock_client):
        store.merge_lifecycle_flags(1, lambda f: f.mark_destroyed())
        self._renewed(store)
        result = loop.handle_subscription_renewal(1)
        assert result.reprovision_required is True
        mock_client.create_vm_from_template.assert_not_called()

    def test_nothing_to_clear(self, loop, store):
        self._renewed(store)
        assert loop.handle_subscription_renewal(1).renewed is False
        assert actions(store, 1) == []

    def test_still_expired(self, loop, store):
        store.merge_lifecycle_flags(1, lambda f: f.mark_shutdown(no_subscription=False))
        store.update_subscription(1, plan="kd_drop", expires_at=datetime.now(timezone.utc) - timedelta(days=1))
        assert loop.handle_subscription_renewal(1).renewed is False

    def test_entitlement_decides_not_billing_status(self, loop, store):
        store.merge_lifecycle_flags(1, lambda f: f.mark_shutdown(no_subscription=False))
        store.update_subscription(
            1, plan="kd_drop", status="cancel_pending", expires_at=datetime.now(timezone.utc) + timedelta(days=3)
        )
        assert loop.handle_subscription_renewal(1).renewed is True

    def test_unknown_owner(self, loop):
        assert loop.handle_subscription_renewal(404).renewed is False


class TestImmediateShutdown:
    """Tests for shutdown_vms_for_inactive_subscription."""

    def test_inactive_owner(self, loop, store, mock_client):
        store.update_subscription(1, plan="kd_drop", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))
        store.assign_vm(1, 3001)
        store.assign_vm(1, 3002)

        assert loop.shutdown_vms_for_inactive_subscription(1) == 2
        assert actions(store, 1) == ["vm_immediate_shutdown_subscription_inactive"] * 2
        flags = store.get_subscription(1).flags
        assert flags.shutdown_on_expiry is False
        assert flags.shutdown_on_no_sub is False

    def test_entitled_owner_untouched(self, loop, store, mock_client):
        store.update_subscription(1, plan="kd_drop")
        store.assign_vm(1, 3001)
        assert loop.shutdown_vms_for_inactive_subscription(1) == 0
        mock_client.shutdown.assert_not_called()

    def test_admin_and_unknown(self, loop, store, mock_client):
        store.assign_vm(99, 3050)
        assert loop.shutdown_vms_for_inactive_subscription(99) == 0
        assert loop.shutdown_vms_for_inactive_subscription(404) == 0
        mock_client.shutdown.assert_not_called()


class TestScheduling:
    """Tests for the background thread."""

    def test_first_tick_after_initial_delay(self, mock_client, store):
        ticked = threading.Event()
        loop = ReconciliationLoop(mock_client, store, interval_seconds=3600, initial_delay_seconds=0.01)
        loop.tick = MagicMock(side_effect=lambda: ticked.set())

        loop.start()
        try:
            assert ticked.wait(2)
            assert loop.running is True
        finally:
            loop.stop()
        assert loop.running is False
        assert loop.tick.call_count == 1

    def test_failing_tick_keeps_loop_alive(self, mock_client, store):
        calls = []
        done = threading.Event()

        def _tick():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("store hiccup")

        loop = ReconciliationLoop(mock_client, store, interval_seconds=0.01, initial_delay_seconds=0)
        loop.tick = _tick
        loop.start()
        try:
            assert done.wait(2)
        finally:
            loop.stop()
