#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Provisioning workflow for the VM broker.
Turns a purchased plan into running VMs and walks the owner through the
manual setup sequence (initiate -> upload file -> complete).
"""
import dataclasses
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from hypervisor import HypervisorClient, VMOperationError
from models import PlanDetails, SetupStatus, utcnow
from state import ProvisioningJournal, ProvisioningStateStore
from store import AssignmentConflict, RecordStore

from .plans import PlanCatalog

logger = logging.getLogger("vm-broker")

DEFAULT_TEMPLATE_VMID = 3000
DEFAULT_SETUP_FILE_REMOTE_PATH = "C:\\hwho\\hwho.dat"
DEFAULT_AUTOMATION_COMMAND = [
    "powershell.exe",
    "-ExecutionPolicy",
    "Bypass",
    "-File",
    "C:\\automation\\start_{plan_type}.ps1",
]


class OwnerNotFound(LookupError):
    """The owner id is unknown to the record store."""


class SetupStateError(RuntimeError):
    """The requested setup step is not allowed from the owner's current status."""


class ProvisioningWorkflow:
    """Creates VMs for an owner and tracks the setup sequence that follows."""

    def __init__(
        self,
        client: HypervisorClient,
        store: RecordStore,
        states: ProvisioningStateStore,
        plans: PlanCatalog,
        template_vmid: int = DEFAULT_TEMPLATE_VMID,
        journal: Optional[ProvisioningJournal] = None,
        setup_file_remote_path: str = DEFAULT_SETUP_FILE_REMOTE_PATH,
        automation_command: Optional[Sequence[str]] = None,
    ):
        self.client = client
        self.store = store
        self.states = states
        self.plans = plans
        self.template_vmid = int(template_vmid)
        self.journal = journal or ProvisioningJournal()
        self.setup_file_remote_path = setup_file_remote_path
        self.automation_command = list(automation_command or DEFAULT_AUTOMATION_COMMAND)

    def extract_plan_details(self, event: Mapping[str, Any]) -> PlanDetails:
        return self.plans.extract(event)

    # -------------------------- provisioning --------------------------
    def provision_vms_for_user(self, owner_id: int, event: Mapping[str, Any]) -> Dict[str, Any]:
        """Create vm_count VMs one after another; failures are skipped, never rolled back."""
        logger.info("Starting VM provisioning for owner %s", owner_id)
        account = self.store.get_account(owner_id)
        if account is None:
            raise OwnerNotFound(f"Owner {owner_id} not found")

        plan = self.extract_plan_details(event)
        logger.info("Plan details for owner %s: %s", owner_id, plan)
        self.states.create(owner_id, plan)

        created = []
        failures: List[Dict[str, Any]] = []
        try:
            for index in range(1, plan.vm_count + 1):
                vm = self._create_one(owner_id, account.account_ref, index, plan, failures)
                if vm is None:
                    continue
                created.append(vm)
                self.states.update(owner_id, vms_created=list(created), vms_pending=plan.vm_count - index)
        except Exception as e:
            logger.error("VM provisioning failed for owner %s: %s", owner_id, e)
            self.states.advance(
                owner_id,
                SetupStatus.FAILED,
                vms_created=list(created),
                vms_pending=0,
                error=str(e),
                completed_at=utcnow(),
            )
            raise

        final = SetupStatus.READY_FOR_SETUP if created else SetupStatus.FAILED
        self.states.advance(
            owner_id,
            final,
            vms_created=list(created),
            vms_pending=0,
            error=None if created else "No VMs could be created",
            completed_at=utcnow(),
        )
        self.store.log_action(
            owner_id,
            "vms_provisioned",
            "subscription",
            str(event.get("id") or "unknown"),
            {
                "planType": plan.plan_type,
                "vmCount": plan.vm_count,
                "vmsCreated": [{"vmid": vm.vmid, "name": vm.name} for vm in created],
                "failures": failures,
                "template": self.template_vmid,
            },
            "system",
        )
        logger.info("Provisioned %d/%d VMs for owner %s", len(created), plan.vm_count, owner_id)
        return {
            "success": bool(created),
            "status": final.value,
            "vms_created": [dataclasses.asdict(vm) for vm in created],
            "plan_details": dataclasses.asdict(plan),
            "failures": failures,
            "setup_required": True,
        }

    def _create_one(self, owner_id: int, owner_ref: str, index: int, plan: PlanDetails, failures: List[Dict[str, Any]]):
        def on_step(step: str, vmid: int) -> None:
            self.journal.record(owner_id, index, step, vmid)

        try:
            vm = self.client.create_vm_from_template(
                self.template_vmid, owner_ref, index, plan.plan_type, plan.vm_count, on_step=on_step
            )
        except VMOperationError as e:
            logger.error(
                "Failed to create VM %d for owner %s: reason=%s vmid=%s error=%s",
                index,
                owner_id,
                "vm_create_failed",
                e.vmid,
                e,
            )
            self.journal.fail(owner_id, index, str(e))
            failures.append({"index": index, "vmid": e.vmid, "error": str(e)})
            return None
        try:
            self.store.assign_vm(owner_id, vm.vmid)
        except AssignmentConflict as e:
            logger.error(
                "Failed to assign VM %s to owner %s: reason=%s vmid=%s error=%s",
                vm.vmid,
                owner_id,
                "vm_assignment_conflict",
                vm.vmid,
                e,
            )
            self.journal.fail(owner_id, index, str(e))
            failures.append({"index": index, "vmid": vm.vmid, "error": str(e)})
            return None
        self.journal.clear(owner_id, index)
        logger.info("Created VM %s (%s) for owner %s", vm.vmid, vm.name, owner_id)
        return vm

    # -------------------------- setup sequence --------------------------
    def get_setup_status(self, owner_id: int) -> Dict[str, Any]:
        state = self.states.get(owner_id)
        if state is None:
            return {"status": "none", "message": "No setup in progress"}
        return state.to_public()

    def check_setup_required(self, owner_id: int) -> Dict[str, Any]:
        """Setup is required when the owner has a plan, holds VMs and provisioning is ready."""
        subscription = self.store.get_subscription(owner_id)
        if subscription is None or not subscription.has_plan:
            return {"required": False, "reason": "no_subscription"}
        vm_ids = self.store.list_vm_ids(owner_id)
        if not vm_ids:
            return {"required": False, "reason": "no_vms"}
        state = self.states.get(owner_id)
        if state is not None and state.status is SetupStatus.READY_FOR_SETUP:
            return {
                "required": True,
                "reason": "vms_ready",
                "vm_count": len(vm_ids),
                "plan_type": state.plan_details.plan_type,
            }
        return {"required": False, "reason": "setup_complete_or_not_needed"}

    def initiate_setup(self, owner_id: int) -> bool:
        state = self.states.get(owner_id)
        if state is None:
            return False
        if state.status is SetupStatus.SETUP_IN_PROGRESS:
            return True
        if state.status is not SetupStatus.READY_FOR_SETUP:
            raise SetupStateError(f"Cannot initiate setup from status {state.status.value}")
        self.states.advance(owner_id, SetupStatus.SETUP_IN_PROGRESS, setup_initiated_at=utcnow())
        logger.info("Owner %s initiated VM setup process", owner_id)
        return True

    def _target_vmids(self, owner_id: int) -> List[int]:
        vm_ids = self.store.list_vm_ids(owner_id)
        if vm_ids:
            return vm_ids
        state = self.states.get(owner_id)
        return [vm.vmid for vm in state.vms_created] if state else []

    def handle_file_upload(self, owner_id: int, file_path: str, file_name: Optional[str] = None) -> Dict[str, Any]:
        """Distribute the setup file to every VM the owner holds, best-effort per VM."""
        state = self.states.get(owner_id)
        if state is None or state.status is not SetupStatus.SETUP_IN_PROGRESS:
            raise SetupStateError("No active setup process found")
        file_name = file_name or file_path
        logger.info("Processing uploaded file for owner %s: %s", owner_id, file_name)

        results = []
        vm_ids = self._target_vmids(owner_id)
        for vmid in vm_ids:
            try:
                self.client.upload_file(vmid, file_path, self.setup_file_remote_path)
                results.append({"vmid": vmid, "success": True})
                logger.info("File distributed to VM %s", vmid)
            except (VMOperationError, OSError) as e:
                logger.error(
                    "Failed to upload file to VM %s: reason=%s vmid=%s error=%s", vmid, "file_upload_failed", vmid, e
                )
                results.append({"vmid": vmid, "success": False, "error": str(e)})

        self.states.advance(owner_id, SetupStatus.FILE_UPLOADED, upload_results=results, file_uploaded_at=utcnow())
        succeeded = sum(1 for r in results if r["success"])
        self.store.log_action(
            owner_id,
            "setup_file_uploaded",
            "vm_setup",
            file_name,
            {"vmCount": len(vm_ids), "successfulUploads": succeeded, "fileName": file_name},
            "user",
        )
        return {"success": True, "distributed_to_vms": succeeded, "total_vms": len(vm_ids), "upload_results": results}

    def complete_setup(self, owner_id: int) -> Dict[str, Any]:
        """Start the plan's automation entrypoint on each VM and close the setup."""
        state = self.states.get(owner_id)
        if state is None:
            raise SetupStateError("No setup process found")
        if state.status is SetupStatus.COMPLETED:
            started = sum(1 for r in state.automation_results if r.get("success"))
            return {"success": True, "automation_started": started, "total_vms": len(state.automation_results)}
        if state.status not in (
            SetupStatus.READY_FOR_SETUP,
            SetupStatus.SETUP_IN_PROGRESS,
            SetupStatus.FILE_UPLOADED,
        ):
            raise SetupStateError(f"Cannot complete setup from status {state.status.value}")

        plan_type = state.plan_details.plan_type
        command = [part.format(plan_type=plan_type) for part in self.automation_command]
        results = []
        vm_ids = self._target_vmids(owner_id)
        for vmid in vm_ids:
            try:
                reply = self.client.execute_command(vmid, command)
                results.append({"vmid": vmid, "success": True, "pid": reply.get("pid")})
                logger.info("Started automation on VM %s", vmid)
            except VMOperationError as e:
                logger.error(
                    "Failed to start automation on VM %s: reason=%s vmid=%s error=%s",
                    vmid,
                    "automation_start_failed",
                    vmid,
                    e,
                )
                results.append({"vmid": vmid, "success": False, "error": str(e)})

        self.states.advance(
            owner_id,
            SetupStatus.COMPLETED,
            automation_results=results,
            setup_required=False,
            completed_at=utcnow(),
        )
        started = sum(1 for r in results if r["success"])
        self.store.log_action(
            owner_id,
            "setup_completed",
            "vm_setup",
            "automation_started",
            {"vmCount": len(vm_ids), "planType": plan_type, "successfulAutomations": started},
            "user",
        )
        logger.info("Setup completed for owner %s", owner_id)
        return {"success": True, "automation_started": started, "total_vms": len(vm_ids)}

    # -------------------------- housekeeping --------------------------
    def cleanup_old_states(self, max_age_hours: float = 24) -> int:
        return self.states.cleanup(max_age_hours)

    def pending_journal(self) -> List[Dict[str, Any]]:
        return self.journal.pending()
