#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
API handlers module for the VM broker.
This module contains the API endpoint handlers for provisioning, setup and
entitlement operations.
"""
import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import HTTPException

from hypervisor import HypervisorClient, HypervisorError
from hypervisor.client import format_uptime
from models import EntitlementEvent, FileUploadRequest, ProvisionRequest
from orchestration import (
    EntitlementEventHandler,
    OwnerNotFound,
    ProvisioningWorkflow,
    ReconciliationLoop,
    SetupStateError,
)
from state import StateTransitionError
from store import RecordStore, StoreUnavailable

logger = logging.getLogger("vm-broker")

VERSION = "1.0.0"


class APIHandlers:

    def __init__(
        self,
        client: HypervisorClient,
        store: RecordStore,
        workflow: ProvisioningWorkflow,
        loop: ReconciliationLoop,
        events: Optional[EntitlementEventHandler] = None,
    ):
        self.client = client
        self.store = store
        self.workflow = workflow
        self.loop = loop
        self.events = events or EntitlementEventHandler(workflow, loop)

    def _call(self, what: str, fn: Callable[[], Any]) -> Any:
        """Run fn and translate broker errors into HTTP errors."""
        try:
            return fn()
        except HTTPException:
            raise
        except OwnerNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (SetupStateError, StateTransitionError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreUnavailable as e:
            logger.error("%s failed, record store unavailable: %s", what, e)
            raise HTTPException(status_code=503, detail=f"Record store unavailable: {e}")
        except HypervisorError as e:
            logger.error("%s failed, hypervisor error: %s", what, e)
            raise HTTPException(status_code=502, detail=f"{what} failed: {e}")
        except Exception as e:
            logger.exception("%s failed: %s", what, e)
            raise HTTPException(status_code=500, detail=f"{what} failed: {e}")

    def _require_owner(self, owner_id: int) -> None:
        if self.store.get_account(owner_id) is None:
            raise HTTPException(status_code=404, detail=f"Owner {owner_id} not found")

    # -------------------------- info --------------------------
    def healthz(self) -> Dict[str, Any]:
        return {"status": "ok", "reconciliation_running": self.loop.running}

    def v1_index(self) -> Dict[str, Any]:
        return {
            "service": "vm-broker",
            "version": VERSION,
            "endpoints": [
                "/healthz",
                "/v1/version",
                "/v1/node",
                "/v1/owners/{owner_id}/vms",
                "/v1/owners/{owner_id}/provision",
                "/v1/owners/{owner_id}/setup",
                "/v1/events/entitlement",
                "/v1/reconcile",
                "/v1/provisioning/journal",
            ],
        }

    def v1_version(self) -> Dict[str, Any]:
        return {"version": VERSION}

    def v1_node_status(self) -> Dict[str, Any]:
        return self._call("Node status", self.client.node_status)

    # -------------------------- owner VMs --------------------------
    def v1_owner_vms(self, owner_id: int) -> Dict[str, Any]:
        """List the owner's VMs with live status; unreachable VMs are reported as unknown."""

        def _list() -> Dict[str, Any]:
            self._require_owner(owner_id)
            vms: List[Dict[str, Any]] = []
            for vmid in self.store.list_vm_ids(owner_id):
                try:
                    status = self.client.query_status(vmid)
                except HypervisorError as e:
                    logger.warning("Failed to get status for VM %s: %s", vmid, e)
                    vms.append({"vmid": vmid, "status": "unknown", "error": str(e)})
                    continue
                vms.append(
                    {
                        "vmid": vmid,
                        "name": status.get("name"),
                        "status": status.get("status", "unknown"),
                        "cpu": status.get("cpu"),
                        "memory": status.get("mem"),
                        "max_memory": status.get("maxmem"),
                        "uptime": format_uptime(status.get("uptime") or 0),
                    }
                )
            return {"owner_id": owner_id, "vms": vms}

        return self._call("List VMs", _list)

    def v1_entitlement(self, owner_id: int) -> Dict[str, Any]:
        def _check() -> Dict[str, Any]:
            account = self.store.get_account(owner_id)
            if account is None:
                raise OwnerNotFound(f"Owner {owner_id} not found")
            subscription = self.store.get_subscription(owner_id)
            return {
                "owner_id": owner_id,
                "active": self.loop.has_active_subscription(account, subscription),
                "plan": subscription.plan if subscription else None,
                "expires_at": subscription.expires_at.isoformat() if subscription and subscription.expires_at else None,
            }

        return self._call("Entitlement check", _check)

    # -------------------------- provisioning / setup --------------------------
    def v1_provision(self, owner_id: int, req: ProvisionRequest) -> Dict[str, Any]:
        return self._call("Provisioning", lambda: self.workflow.provision_vms_for_user(owner_id, req.as_plan_event()))

    def v1_setup_status(self, owner_id: int) -> Dict[str, Any]:
        return self._call("Setup status", lambda: self.workflow.get_setup_status(owner_id))

    def v1_setup_required(self, owner_id: int) -> Dict[str, Any]:
        return self._call("Setup check", lambda: self.workflow.check_setup_required(owner_id))

    def v1_setup_initiate(self, owner_id: int) -> Dict[str, Any]:
        started = self._call("Setup initiation", lambda: self.workflow.initiate_setup(owner_id))
        if not started:
            raise HTTPException(status_code=400, detail="No VMs ready for setup")
        return {"status": "success", "message": "Setup process initiated"}

    def v1_setup_upload(self, owner_id: int, req: FileUploadRequest) -> Dict[str, Any]:
        return self._call(
            "File upload", lambda: self.workflow.handle_file_upload(owner_id, req.file_path, req.file_name)
        )

    def v1_setup_complete(self, owner_id: int) -> Dict[str, Any]:
        return self._call("Setup completion", lambda: self.workflow.complete_setup(owner_id))

    # -------------------------- entitlement enforcement --------------------------
    def v1_shutdown_inactive(self, owner_id: int) -> Dict[str, Any]:
        count = self._call("Immediate shutdown", lambda: self.loop.shutdown_vms_for_inactive_subscription(owner_id))
        return {"owner_id": owner_id, "shutdowns": count}

    def v1_renewal(self, owner_id: int) -> Dict[str, Any]:
        result = self._call("Renewal", lambda: self.loop.handle_subscription_renewal(owner_id))
        return dataclasses.asdict(result)

    def v1_entitlement_event(self, event: EntitlementEvent) -> Dict[str, Any]:
        return self._call("Entitlement event", lambda: self.events.handle_event(event))

    def v1_reconcile(self) -> Dict[str, Any]:
        return self._call("Reconciliation", self.loop.tick)

    def v1_reconcile_last(self) -> Dict[str, Any]:
        return {"running": self.loop.running, "last_summary": self.loop.last_summary}

    # -------------------------- housekeeping --------------------------
    def v1_journal(self) -> Dict[str, Any]:
        entries = self._call("Journal read", self.workflow.pending_journal)
        return {"pending": entries, "count": len(entries)}

    def v1_cleanup_states(self, max_age_hours: float = 24) -> Dict[str, Any]:
        removed = self._call("State cleanup", lambda: self.workflow.cleanup_old_states(max_age_hours))
        return {"removed": removed}
