#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
CLI commands module for the VM broker.
This module contains the command-line interface commands for provisioning,
setup and entitlement operations. Every command prints one JSON document.
"""
import dataclasses
import logging
from typing import Any, Dict, Optional

from config import ConfigManager
from models import EntitlementEvent, ProvisionRequest
from services import BrokerServices, build_services
from utils.validation import fail, succeed

logger = logging.getLogger("vm-broker")


class CLICommands:
    """CLI commands handler.
    typer.Exit is a RuntimeError, so succeed() is always called outside the
    try block that maps failures to fail().
    """

    def __init__(self, services: Optional[BrokerServices] = None, config: Optional[Dict[str, Any]] = None):
        if services is None:
            cfg = config or ConfigManager().load_config(require_hypervisor=True)
            services = build_services(cfg)
        self.services = services

    def provision(self, owner_id: int, plan_type: Optional[str] = None, vm_count: Optional[int] = None):
        """Provision VMs for an owner."""
        try:
            req = ProvisionRequest(plan_type=plan_type, vm_count=vm_count)
            result = self.services.workflow.provision_vms_for_user(owner_id, req.as_plan_event())
        except Exception as e:
            fail(f"Provisioning failed: {e}")
        succeed(result)

    def setup_status(self, owner_id: int):
        try:
            status = self.services.workflow.get_setup_status(owner_id)
            required = self.services.workflow.check_setup_required(owner_id)
        except Exception as e:
            fail(f"Setup status failed: {e}")
        succeed({"status": status, "required": required})

    def initiate_setup(self, owner_id: int):
        try:
            started = self.services.workflow.initiate_setup(owner_id)
        except Exception as e:
            fail(f"Setup initiation failed: {e}")
        if not started:
            fail("No VMs ready for setup")
        succeed({"status": "success", "message": "Setup process initiated"})

    def upload_file(self, owner_id: int, file_path: str):
        try:
            result = self.services.workflow.handle_file_upload(owner_id, file_path)
        except Exception as e:
            fail(f"File upload failed: {e}")
        succeed(result)

    def complete_setup(self, owner_id: int):
        try:
            result = self.services.workflow.complete_setup(owner_id)
        except Exception as e:
            fail(f"Setup completion failed: {e}")
        succeed(result)

    def reconcile(self):
        """Run one reconciliation tick in the foreground."""
        try:
            summary = self.services.loop.tick()
        except Exception as e:
            fail(f"Reconciliation failed: {e}")
        succeed(summary)

    def renew(self, owner_id: int):
        try:
            result = self.services.loop.handle_subscription_renewal(owner_id)
        except Exception as e:
            fail(f"Renewal failed: {e}")
        succeed(dataclasses.asdict(result))

    def shutdown_inactive(self, owner_id: int):
        try:
            count = self.services.loop.shutdown_vms_for_inactive_subscription(owner_id)
        except Exception as e:
            fail(f"Immediate shutdown failed: {e}")
        succeed({"owner_id": owner_id, "shutdowns": count})

    def entitlement_event(self, owner_id: int, plan: Optional[str], status: str):
        try:
            # omitted values keep the current subscription
            current = self.services.store.get_subscription(owner_id)
            event = EntitlementEvent(
                owner_id=owner_id,
                plan=plan or (current.plan if current else None),
                status=status,
                expires_at=current.expires_at if current else None,
            )
            result = self.services.events.handle_event(event)
        except Exception as e:
            fail(f"Entitlement event failed: {e}")
        succeed(result)

    def journal(self):
        try:
            pending = self.services.journal.pending()
        except Exception as e:
            fail(f"Journal read failed: {e}")
        succeed({"pending": pending, "count": len(pending)})

    def node_status(self):
        try:
            status = self.services.client.node_status()
        except Exception as e:
            fail(f"Node status failed: {e}")
        succeed(status)
