"""Applies billing entitlement changes: renewal, first provisioning, immediate shutdown."""
import logging
from typing import Any, Dict

from models import EntitlementEvent

from .provisioning import OwnerNotFound, ProvisioningWorkflow
from .reconciliation import ACTIVE_STATUSES, ReconciliationLoop

logger = logging.getLogger("vm-broker")


class EntitlementEventHandler:
    def __init__(self, workflow: ProvisioningWorkflow, loop: ReconciliationLoop):
        self.workflow = workflow
        self.loop = loop
        self.store = workflow.store

    def handle_event(self, event: EntitlementEvent) -> Dict[str, Any]:
        owner_id = event.owner_id
        if self.store.get_account(owner_id) is None:
            raise OwnerNotFound(f"Owner {owner_id} not found")
        logger.info("Entitlement event for owner %s: plan=%s status=%s", owner_id, event.plan, event.status)

        active = event.status in ACTIVE_STATUSES
        # the event carries the full entitlement: a null plan clears it, and an
        # active event without expiry is an indefinite plan
        self.store.update_subscription(
            owner_id,
            plan=event.plan,
            status=event.status,
            expires_at=event.expires_at,
            external_refs=event.external_refs,
            clear_plan=event.plan is None,
            clear_expiry=active and event.expires_at is None,
        )
        result: Dict[str, Any] = {"owner_id": owner_id, "status": event.status}

        if active:
            renewal = self.loop.handle_subscription_renewal(owner_id)
            result["renewal"] = {
                "renewed": renewal.renewed,
                "was_shutdown": renewal.was_shutdown,
                "was_destroyed": renewal.was_destroyed,
                "reprovision_required": renewal.reprovision_required,
            }
            if not self.store.list_vm_ids(owner_id):
                result["provisioning"] = self.workflow.provision_vms_for_user(owner_id, event.as_plan_event())
        else:
            result["shutdowns"] = self.loop.shutdown_vms_for_inactive_subscription(owner_id)
        return result
