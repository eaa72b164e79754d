#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""API routes module for the VM broker."""
from fastapi import FastAPI

from models import EntitlementEvent, FileUploadRequest, ProvisionRequest
from .handlers import APIHandlers


def register_routes(app: FastAPI, handlers: APIHandlers) -> None:
    """Register all API routes with the FastAPI application."""

    # Health and info endpoints
    @app.get("/healthz")
    def healthz():
        return handlers.healthz()

    @app.get("/v1")
    def v1_index():
        return handlers.v1_index()

    @app.get("/v1/version")
    def v1_version():
        return handlers.v1_version()

    @app.get("/v1/node")
    def v1_node_status():
        return handlers.v1_node_status()

    # Owner endpoints
    @app.get("/v1/owners/{owner_id}/vms")
    def v1_owner_vms(owner_id: int):
        return handlers.v1_owner_vms(owner_id)

    @app.get("/v1/owners/{owner_id}/entitlement")
    def v1_entitlement(owner_id: int):
        return handlers.v1_entitlement(owner_id)

    @app.post("/v1/owners/{owner_id}/provision", status_code=201)
    def v1_provision(owner_id: int, req: ProvisionRequest):
        return handlers.v1_provision(owner_id, req)

    @app.get("/v1/owners/{owner_id}/setup")
    def v1_setup_status(owner_id: int):
        return handlers.v1_setup_status(owner_id)

    @app.get("/v1/owners/{owner_id}/setup/required")
    def v1_setup_required(owner_id: int):
        return handlers.v1_setup_required(owner_id)

    @app.post("/v1/owners/{owner_id}/setup/initiate")
    def v1_setup_initiate(owner_id: int):
        return handlers.v1_setup_initiate(owner_id)

    @app.post("/v1/owners/{owner_id}/setup/upload")
    def v1_setup_upload(owner_id: int, req: FileUploadRequest):
        return handlers.v1_setup_upload(owner_id, req)

    @app.post("/v1/owners/{owner_id}/setup/complete")
    def v1_setup_complete(owner_id: int):
        return handlers.v1_setup_complete(owner_id)

    @app.post("/v1/owners/{owner_id}/shutdown")
    def v1_shutdown_inactive(owner_id: int):
        return handlers.v1_shutdown_inactive(owner_id)

    @app.post("/v1/owners/{owner_id}/renewal")
    def v1_renewal(owner_id: int):
        return handlers.v1_renewal(owner_id)

    # Billing and reconciliation endpoints
    @app.post("/v1/events/entitlement")
    def v1_entitlement_event(event: EntitlementEvent):
        return handlers.v1_entitlement_event(event)

    @app.post("/v1/reconcile")
    def v1_reconcile():
        return handlers.v1_reconcile()

    @app.get("/v1/reconcile")
    def v1_reconcile_last():
        return handlers.v1_reconcile_last()

    # Provisioning housekeeping
    @app.get("/v1/provisioning/journal")
    def v1_journal():
        return handlers.v1_journal()

    @app.post("/v1/provisioning/cleanup")
    def v1_cleanup_states(max_age_hours: float = 24):
        return handlers.v1_cleanup_states(max_age_hours)
