#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Reconciliation loop for the VM broker.
Periodically compares each owner's entitlement with the power state of the
VMs assigned to them: shuts VMs down when the entitlement lapses, destroys
them once the grace period has passed, and clears the markers on renewal.
"""
import dataclasses
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from hypervisor import HypervisorClient, VMOperationError
from models import Account, LifecycleFlags, Subscription, SubscriptionStatus, utcnow
from store import RecordStore

logger = logging.getLogger("vm-broker")

REASON_EXPIRED = "subscription_expired"
REASON_NO_SUBSCRIPTION = "no_subscription"

ACTIVE_STATUSES = {SubscriptionStatus.ACTIVE.value, "trialing"}


@dataclasses.dataclass
class RenewalResult:
    renewed: bool
    was_shutdown: bool = False
    was_destroyed: bool = False
    reprovision_required: bool = False


class ReconciliationLoop:
    """Background entitlement enforcement over every non-admin owner."""

    def __init__(
        self,
        client: HypervisorClient,
        store: RecordStore,
        interval_seconds: float = 3600,
        initial_delay_seconds: float = 5,
        destroy_after_hours: float = 24,
        stop_grace_seconds: float = 5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.store = store
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.destroy_after_hours = destroy_after_hours
        self.stop_grace_seconds = stop_grace_seconds
        self._sleep = sleep
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_summary: Optional[Dict[str, Any]] = None

    # -------------------------- scheduling --------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Reconciliation loop already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reconciliation", daemon=True)
        self._thread.start()
        logger.info(
            "Reconciliation loop started (first tick in %ss, then every %ss)",
            self.initial_delay_seconds,
            self.interval_seconds,
        )

    def stop(self, timeout: float = 10) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Reconciliation loop stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self) -> None:
        delay = self.initial_delay_seconds
        while not self._stop.wait(delay):
            try:
                self.tick()
            except Exception as e:
                logger.error("Reconciliation tick failed: %s", e)
            delay = self.interval_seconds

    # -------------------------- selection --------------------------
    def _candidates(self) -> List[Tuple[Account, Optional[Subscription]]]:
        return [(a, self.store.get_subscription(a.owner_id)) for a in self.store.list_accounts() if not a.is_admin]

    @staticmethod
    def _expired_with_active_plan(sub: Optional[Subscription], now: datetime) -> bool:
        return (
            sub is not None
            and sub.has_plan
            and sub.expires_at is not None
            and sub.expires_at <= now
            and not sub.flags.shutdown_on_expiry
        )

    @staticmethod
    def _without_subscription(sub: Optional[Subscription]) -> bool:
        return sub is None or (not sub.has_plan and not sub.flags.shutdown_on_no_sub)

    def _overdue_for_destruction(self, sub: Optional[Subscription], now: datetime) -> bool:
        cutoff = now - timedelta(hours=self.destroy_after_hours)
        return (
            sub is not None
            and sub.has_plan
            and sub.expires_at is not None
            and sub.expires_at <= cutoff
            and not sub.flags.destroyed
        )

    def find_inactive_owners(self, now: Optional[datetime] = None) -> List[Tuple[int, str]]:
        """Owners whose VMs should be powered down, with the shutdown reason."""
        now = now or self._clock()
        owners = []
        for account, sub in self._candidates():
            if self._expired_with_active_plan(sub, now):
                owners.append((account.owner_id, REASON_EXPIRED))
            elif self._without_subscription(sub):
                owners.append((account.owner_id, REASON_NO_SUBSCRIPTION))
        return owners

    def find_owners_for_destruction(self, now: Optional[datetime] = None) -> List[int]:
        now = now or self._clock()
        return [account.owner_id for account, sub in self._candidates() if self._overdue_for_destruction(sub, now)]

    # -------------------------- tick --------------------------
    def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One pass over all owners. AuthError and StoreUnavailable propagate."""
        now = now or self._clock()
        logger.info("Reconciliation tick at %s", now.isoformat())
        summary: Dict[str, Any] = {
            "inactive": 0,
            "destroyed_owners": 0,
            "shutdowns": 0,
            "destroyed_vms": 0,
            "failures": 0,
        }

        inactive = self.find_inactive_owners(now)
        if inactive:
            logger.info("Found %d owners with inactive subscriptions", len(inactive))
        for owner_id, reason in inactive:
            shutdowns, failures = self.handle_expired_subscription(owner_id, reason, now)
            summary["inactive"] += 1
            summary["shutdowns"] += shutdowns
            summary["failures"] += failures

        overdue = self.find_owners_for_destruction(now)
        if overdue:
            logger.info("Found %d owners with VMs to destroy", len(overdue))
        for owner_id in overdue:
            destroyed, failures = self.handle_vm_destruction(owner_id, now)
            summary["destroyed_owners"] += 1
            summary["destroyed_vms"] += destroyed
            summary["failures"] += failures

        self.last_summary = summary
        logger.info("Reconciliation tick finished: %s", summary)
        return summary

    def handle_expired_subscription(
        self, owner_id: int, reason: str, now: Optional[datetime] = None
    ) -> Tuple[int, int]:
        """Shut down running VMs, then mark the owner so the next tick skips them."""
        now = now or self._clock()
        shutdowns = failures = 0
        for vmid in self.store.list_vm_ids(owner_id):
            try:
                if not self.client.is_running(vmid):
                    continue
                self.client.shutdown(vmid)
                shutdowns += 1
                logger.info("Auto-shutdown VM %s for owner %s: %s", vmid, owner_id, reason)
                self.store.log_action(
                    owner_id,
                    f"vm_auto_shutdown_{reason}",
                    "vm",
                    str(vmid),
                    {"reason": reason, "automatic": True},
                    "system",
                )
            except VMOperationError as e:
                failures += 1
                logger.error("VM shutdown failed: reason=%s vmid=%s error=%s", reason, vmid, e)

        no_subscription = reason == REASON_NO_SUBSCRIPTION
        self.store.merge_lifecycle_flags(owner_id, lambda flags: flags.mark_shutdown(no_subscription, now))
        return shutdowns, failures

    def handle_vm_destruction(self, owner_id: int, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Stop (best effort) and destroy every VM; the owner is marked destroyed even if some fail."""
        now = now or self._clock()
        destroyed = failures = 0
        for vmid in self.store.list_vm_ids(owner_id):
            try:
                if self.client.is_running(vmid):
                    self.client.stop(vmid)
                    self._sleep(self.stop_grace_seconds)
            except VMOperationError as e:
                logger.warning("Could not stop VM %s before destroy, proceeding with destruction: %s", vmid, e)
            try:
                self.client.destroy(vmid).wait()
            except VMOperationError as e:
                failures += 1
                logger.error("VM destruction failed: reason=%s vmid=%s error=%s", "destroy_overdue", vmid, e)
                self.store.log_action(owner_id, "vm_destruction_failed", "vm", str(vmid), {"error": str(e)}, "system")
                continue
            self.store.remove_vm(owner_id, vmid)
            destroyed += 1
            logger.info("Auto-destroyed VM %s for owner %s", vmid, owner_id)
            self.store.log_action(
                owner_id,
                "vm_auto_destroyed",
                "vm",
                str(vmid),
                {"reason": "subscription_expired_24h", "automatic": True},
                "system",
            )

        self.store.merge_lifecycle_flags(owner_id, lambda flags: flags.mark_destroyed(now))
        return destroyed, failures

    # -------------------------- entitlement --------------------------
    def has_active_subscription(
        self, account: Optional[Account], subscription: Optional[Subscription], now: Optional[datetime] = None
    ) -> bool:
        if account is not None and account.is_admin:
            return True
        if subscription is None or not subscription.has_plan:
            return False
        if subscription.expires_at is None:
            return True
        return subscription.expires_at > (now or self._clock())

    def handle_subscription_renewal(self, owner_id: int) -> RenewalResult:
        """Clear shutdown/destroy markers for a renewed owner. VMs are not recreated here."""
        account = self.store.get_account(owner_id)
        subscription = self.store.get_subscription(owner_id)
        if account is None or subscription is None:
            return RenewalResult(renewed=False)
        if not self.has_active_subscription(account, subscription):
            return RenewalResult(renewed=False)

        before = subscription.flags
        was_shutdown = before.shutdown_on_expiry or before.shutdown_on_no_sub
        was_destroyed = before.destroyed
        if not (was_shutdown or was_destroyed):
            return RenewalResult(renewed=False)

        now = self._clock()

        def _clear(flags: LifecycleFlags) -> None:
            flags.clear_for_renewal(now)

        self.store.merge_lifecycle_flags(owner_id, _clear)
        self.store.log_action(
            owner_id,
            "subscription_renewed_vm_access_restored",
            "subscription",
            str(owner_id),
            {"wasShutdown": was_shutdown, "wasDestroyed": was_destroyed, "planType": subscription.plan},
            "system",
        )
        logger.info("Subscription renewed for owner %s, VM access restored", owner_id)
        return RenewalResult(
            renewed=True,
            was_shutdown=was_shutdown,
            was_destroyed=was_destroyed,
            reprovision_required=was_destroyed,
        )

    def shutdown_vms_for_inactive_subscription(self, owner_id: int) -> int:
        """Immediate shutdown outside the tick; does not set lifecycle flags."""
        account = self.store.get_account(owner_id)
        if account is None or account.is_admin:
            return 0
        if self.has_active_subscription(account, self.store.get_subscription(owner_id)):
            return 0
        shutdowns = 0
        for vmid in self.store.list_vm_ids(owner_id):
            try:
                if not self.client.is_running(vmid):
                    continue
                self.client.shutdown(vmid)
                shutdowns += 1
                self.store.log_action(
                    owner_id,
                    "vm_immediate_shutdown_subscription_inactive",
                    "vm",
                    str(vmid),
                    {"reason": "subscription_inactive", "immediate": True},
                    "system",
                )
            except VMOperationError as e:
                logger.error("VM shutdown failed: reason=%s vmid=%s error=%s", "subscription_inactive", vmid, e)
        if shutdowns:
            logger.info("Immediately shut down %d VMs for owner %s", shutdowns, owner_id)
        return shutdowns
