#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Licensed to the Apache Software Foundation (ASF) under one
# or more contributor license agreements.  See the NOTICE file
# distributed with this work for additional information
# regarding copyright ownership.  The ASF licenses this file
# to you under the Apache License, Version 2.0 (the
# "License"); you may not use this file except in compliance
# with the License.  You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from api import VERSION, APIHandlers, register_routes
from cli import CLICommands
from config import ConfigManager, tls_options
from services import BrokerServices, build_services

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"

logger = logging.getLogger("vm-broker")
logger.setLevel(logging.INFO)

BROKER_CFG: Dict[str, Any] = {}
SERVICES: Optional[BrokerServices] = None

app = FastAPI(title="VM Broker", version=VERSION)


def _apply_logging_from_cfg(cfg: Dict[str, Any]) -> None:
    """Set the broker log level and attach console/file handlers once."""
    log_cfg = cfg.get("logging") or {}
    level = logging.getLevelName(str(log_cfg.get("level") or "INFO").upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    if logger.handlers:
        return
    handlers = [logging.StreamHandler()]
    if log_cfg.get("file"):
        Path(log_cfg["file"]).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_cfg["file"], encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)


@app.on_event("startup")
async def startup_event():
    """Wire components, register routes and start the background loops."""
    global BROKER_CFG, SERVICES
    if not BROKER_CFG:
        BROKER_CFG = ConfigManager().load_config(require_hypervisor=True)
    _apply_logging_from_cfg(BROKER_CFG)
    hv = BROKER_CFG["hypervisor"]
    logger.info("Starting VM Broker %s against %s (node %s)", VERSION, hv["url"], hv["node"])

    SERVICES = build_services(BROKER_CFG)
    register_routes(app, APIHandlers(SERVICES.client, SERVICES.store, SERVICES.workflow, SERVICES.loop, SERVICES.events))
    orphans = SERVICES.report_orphans()
    if orphans:
        logger.warning("%d provisioning steps were interrupted; see /v1/provisioning/journal", orphans)
    SERVICES.start_background()
    logger.info("VM Broker ready on %s:%s", BROKER_CFG["bind_host"], BROKER_CFG["bind_port"])


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background loops. VMs are left as they are."""
    if SERVICES is not None:
        SERVICES.stop_background()
    logger.info("VM Broker stopped")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.monotonic()
    response = await call_next(request)
    logger.info(
        "%s %s -> %d (%.0f ms)",
        request.method,
        request.url.path,
        response.status_code,
        (time.monotonic() - started) * 1000,
    )
    return response


@app.get("/", include_in_schema=False)
def root():
    loop_running = SERVICES is not None and SERVICES.loop.running
    return {"status": "ok", "service": "vm-broker", "version": VERSION, "reconciliation_running": loop_running}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=422, content={"error": "Invalid request", "detail": exc.errors()})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s %s failed with %d: %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail, "path": request.url.path})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "path": request.url.path})


# operator CLI, selected with VM_BROKER_MODE=cli
cli = typer.Typer()


def _commands() -> CLICommands:
    _apply_logging_from_cfg(BROKER_CFG)
    return CLICommands(config=BROKER_CFG or None)


@cli.command()
def provision(owner_id: int, plan_type: Optional[str] = None, vm_count: Optional[int] = None):
    """Provision VMs for an owner."""
    _commands().provision(owner_id, plan_type, vm_count)


@cli.command()
def setup_status(owner_id: int):
    """Show setup state and whether setup is required."""
    _commands().setup_status(owner_id)


@cli.command()
def initiate_setup(owner_id: int):
    """Start the manual setup sequence."""
    _commands().initiate_setup(owner_id)


@cli.command()
def upload_file(owner_id: int, file_path: Path):
    """Distribute a setup file to the owner's VMs."""
    _commands().upload_file(owner_id, str(file_path))


@cli.command()
def complete_setup(owner_id: int):
    """Start the plan automation on the owner's VMs."""
    _commands().complete_setup(owner_id)


@cli.command()
def reconcile():
    """Run one reconciliation tick."""
    _commands().reconcile()


@cli.command()
def renew(owner_id: int):
    """Clear shutdown/destroy markers after a renewal."""
    _commands().renew(owner_id)


@cli.command()
def shutdown_inactive(owner_id: int):
    """Immediately shut down VMs of an owner without entitlement."""
    _commands().shutdown_inactive(owner_id)


@cli.command()
def entitlement_event(owner_id: int, status: str = "active", plan: Optional[str] = None):
    """Apply a billing entitlement change."""
    _commands().entitlement_event(owner_id, plan, status)


@cli.command()
def journal():
    """List interrupted provisioning steps."""
    _commands().journal()


@cli.command()
def node_status():
    """Show hypervisor node status."""
    _commands().node_status()


def main():
    """Run the HTTP service, or the operator CLI when VM_BROKER_MODE=cli."""
    global BROKER_CFG
    mode = os.environ.get("VM_BROKER_MODE", "api").lower()
    BROKER_CFG = ConfigManager().load_config(require_hypervisor=True)
    _apply_logging_from_cfg(BROKER_CFG)
    if mode == "cli":
        cli()
        return
    ssl_kwargs = tls_options(BROKER_CFG)
    logger.info("Serving %s", "HTTPS" if ssl_kwargs else "plain HTTP")
    uvicorn.run(app, host=BROKER_CFG["bind_host"], port=BROKER_CFG["bind_port"], log_level="warning", **ssl_kwargs)


if __name__ == "__main__":
    main()
