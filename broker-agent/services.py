#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Component wiring for the VM broker.
Builds the hypervisor client, record store, state stores and the two
orchestration components from one loaded config dict.
"""
import dataclasses
import logging
from typing import Any, Dict

from hypervisor import HypervisorClient
from orchestration import EntitlementEventHandler, PlanCatalog, ProvisioningWorkflow, ReconciliationLoop
from state import ProvisioningJournal, ProvisioningStateStore
from store import JsonRecordStore

logger = logging.getLogger("vm-broker")


@dataclasses.dataclass
class BrokerServices:
    config: Dict[str, Any]
    client: HypervisorClient
    store: JsonRecordStore
    states: ProvisioningStateStore
    journal: ProvisioningJournal
    plans: PlanCatalog
    workflow: ProvisioningWorkflow
    loop: ReconciliationLoop
    events: EntitlementEventHandler

    def start_background(self) -> None:
        prov = self.config.get("provisioning", {})
        self.states.start_sweeper(float(prov.get("sweep_interval_seconds", 3600)))
        if self.config.get("reconciliation", {}).get("enabled", True):
            self.loop.start()
        else:
            logger.info("Reconciliation loop disabled via configuration")

    def stop_background(self) -> None:
        self.loop.stop()
        self.states.stop_sweeper()

    def report_orphans(self) -> int:
        """Log journal entries left by an interrupted provisioning run."""
        pending = self.journal.pending()
        for entry in pending:
            logger.warning(
                "Orphaned provisioning step: owner=%s index=%s vmid=%s step=%s failed=%s",
                entry.get("owner_id"),
                entry.get("index"),
                entry.get("vmid"),
                entry.get("step"),
                entry.get("failed", False),
            )
        return len(pending)


def build_services(cfg: Dict[str, Any]) -> BrokerServices:
    hv_cfg = cfg.get("hypervisor", {})
    prov = cfg.get("provisioning", {})
    rec = cfg.get("reconciliation", {})
    plans_cfg = cfg.get("plans", {})

    client = HypervisorClient.from_config(hv_cfg, plans_cfg)
    store = JsonRecordStore(cfg.get("store", {}).get("path"))
    states = ProvisioningStateStore(ttl_hours=float(prov.get("state_ttl_hours", 24)))
    journal = ProvisioningJournal(prov.get("journal_dir"))
    plans = PlanCatalog(plans_cfg, max_vms=int(prov.get("max_vms", 10)))
    workflow_kwargs: Dict[str, Any] = {}
    if prov.get("setup_file_remote_path"):
        workflow_kwargs["setup_file_remote_path"] = prov["setup_file_remote_path"]
    if prov.get("automation_command"):
        workflow_kwargs["automation_command"] = prov["automation_command"]
    workflow = ProvisioningWorkflow(
        client,
        store,
        states,
        plans,
        template_vmid=int(hv_cfg.get("template_vmid", 3000)),
        journal=journal,
        **workflow_kwargs,
    )
    loop = ReconciliationLoop(
        client,
        store,
        interval_seconds=float(rec.get("interval_seconds", 3600)),
        initial_delay_seconds=float(rec.get("initial_delay_seconds", 5)),
        destroy_after_hours=float(rec.get("destroy_after_hours", 24)),
        stop_grace_seconds=float(rec.get("stop_grace_seconds", 5)),
    )
    return BrokerServices(
        config=cfg,
        client=client,
        store=store,
        states=states,
        journal=journal,
        plans=plans,
        workflow=workflow,
        loop=loop,
        events=EntitlementEventHandler(workflow, loop),
    )
