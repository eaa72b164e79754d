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

"""
Hypervisor control-plane client (HTTP/REST)

This module talks to a Proxmox VE node over its JSON API:

    {url}/api2/json/...

A ticket is obtained from /access/ticket and sent as the PVEAuthCookie
cookie on every privileged call; write calls also carry the
CSRFPreventionToken header. Tickets live for two hours and are refreshed
lazily right before the next privileged call.

Clone, start, stop, shutdown and destroy are asynchronous on the node side:
they return a task id (UPID) which is polled through
/nodes/{node}/tasks/{upid}/status until the task stops.

When HTTPS is used, certificate verification is enabled by default; setting
`verify_ssl=false` bypasses it (self-signed node certificates are common).
"""

import base64
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from models import VMDescriptor
from utils.validation import is_truthy

from .errors import AuthError, ResourceExhausted, TransportError, VMOperationError
from .session import HypervisorSession
from .tasks import DEFAULT_POLL_INTERVAL, DEFAULT_TASK_TIMEOUT, TaskHandle, TaskWaiter

logger = logging.getLogger("vm-broker")

DEFAULT_VMID_RANGE = (3001, 3999)
CONFIGURABLE_KEYS = {"cores", "memory", "description"}
# The guest agent file-write endpoint rejects bodies above 60 KiB
MAX_AGENT_FILE_BYTES = 60 * 1024


def format_uptime(seconds: int) -> str:
    days, rest = divmod(int(seconds or 0), 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class HypervisorClient:
    """One authenticated session against a single hypervisor node."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        node: str,
        verify: Union[bool, str] = True,
        timeout: int = 30,
        vmid_range: Tuple[int, int] = DEFAULT_VMID_RANGE,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        task_poll_interval: float = DEFAULT_POLL_INTERVAL,
        task_backoff: float = 1.0,
        max_poll_interval: Optional[float] = None,
        plans: Optional[Dict[str, Dict[str, Any]]] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        url = (url or "").strip().rstrip("/")
        if url and "://" not in url:
            url = f"https://{url}"
        self.base_url = f"{url}/api2/json"
        self.username = username
        self.password = password
        self.node = node
        self.verify = verify
        self.timeout = int(timeout or 30)
        self.vmid_range = (int(vmid_range[0]), int(vmid_range[1]))
        self.plans = plans or {}
        self.session = HypervisorSession()
        self.http = http or requests.Session()
        self.waiter = TaskWaiter(
            self._task_status,
            poll_interval=task_poll_interval,
            timeout=task_timeout,
            backoff=task_backoff,
            max_poll_interval=max_poll_interval,
        )
        # Serializes allocate -> clone dispatch inside this process only.
        self._allocation_lock = threading.Lock()
        if verify is False:
            urllib3.disable_warnings(InsecureRequestWarning)

    @classmethod
    def from_config(cls, hv_cfg: Dict[str, Any], plans: Optional[Dict[str, Dict[str, Any]]] = None) -> "HypervisorClient":
        """Build a client from the `hypervisor` config section."""
        verify: Union[bool, str] = True
        if "verify_ssl" in hv_cfg and not is_truthy(hv_cfg.get("verify_ssl")):
            verify = False
        elif hv_cfg.get("ca_bundle"):
            verify = str(hv_cfg["ca_bundle"])
        vmid_range = hv_cfg.get("vmid_range") or DEFAULT_VMID_RANGE
        return cls(
            url=hv_cfg.get("url", ""),
            username=hv_cfg.get("username", ""),
            password=hv_cfg.get("password", ""),
            node=hv_cfg.get("node", ""),
            verify=verify,
            timeout=hv_cfg.get("timeout", 30),
            vmid_range=(vmid_range[0], vmid_range[1]),
            task_timeout=hv_cfg.get("task_timeout", DEFAULT_TASK_TIMEOUT),
            task_poll_interval=hv_cfg.get("task_poll_interval", DEFAULT_POLL_INTERVAL),
            task_backoff=hv_cfg.get("task_backoff", 1.0),
            max_poll_interval=hv_cfg.get("max_poll_interval"),
            plans=plans,
        )

    # -------------------------- session --------------------------
    def authenticate(self) -> bool:
        """Exchange credentials for a ticket/CSRF pair valid for two hours."""
        url = f"{self.base_url}/access/ticket"
        try:
            resp = self.http.request(
                "POST",
                url,
                data={"username": self.username, "password": self.password},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.RequestException as e:
            logger.error("Hypervisor authentication failed: %s", e)
            raise AuthError(f"Hypervisor authentication failed: {e}") from e
        if resp.status_code >= 400:
            logger.error("Hypervisor authentication rejected (%s)", resp.status_code)
            raise AuthError(f"Hypervisor authentication failed: HTTP {resp.status_code}")
        try:
            data = (resp.json() or {}).get("data") or {}
        except ValueError as e:
            raise AuthError(f"Hypervisor authentication failed: invalid response ({e})") from e
        ticket = data.get("ticket")
        csrf = data.get("CSRFPreventionToken")
        if not ticket or not csrf:
            raise AuthError("Hypervisor authentication failed - no ticket received")
        self.session = HypervisorSession.issue(ticket, csrf)
        logger.info("Hypervisor authentication successful (node=%s)", self.node)
        return True

    def ensure_session(self) -> None:
        """Authenticate iff there is no ticket or it has expired."""
        if not self.session.is_valid():
            self.authenticate()

    # -------------------------- HTTP helpers --------------------------
    def _headers(self, method: str) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if method != "GET" and self.session.csrf_token:
            headers["CSRFPreventionToken"] = self.session.csrf_token
        return headers

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        vmid: Optional[int] = None,
    ) -> Any:
        """Perform a privileged request and return the `data` member of the reply."""
        self.ensure_session()
        url = f"{self.base_url}{path}"
        cookies = {"PVEAuthCookie": self.session.ticket} if self.session.ticket else None
        try:
            resp = self.http.request(
                method,
                url,
                data=data,
                params=params,
                headers=self._headers(method),
                cookies=cookies,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"HTTP error contacting hypervisor: {e}", vmid=vmid) from e
        return self._data_or_fail(resp, method, path, vmid)

    def _data_or_fail(self, resp: requests.Response, method: str, path: str, vmid: Optional[int]) -> Any:
        try:
            payload = resp.json()
        except ValueError:
            payload = {"raw": resp.text[:500]}
        if resp.status_code == 401:
            # Ticket rejected server-side; the next call re-authenticates.
            self.session = HypervisorSession()
        if resp.status_code >= 400:
            msg = None
            if isinstance(payload, dict):
                msg = payload.get("errors") or payload.get("message") or payload.get("raw")
            raise TransportError(
                f"{method} {path} failed ({resp.status_code}): {msg or resp.reason}",
                vmid=vmid,
                status_code=resp.status_code,
            )
        if not isinstance(payload, dict):
            raise TransportError(f"{method} {path} returned an unexpected payload", vmid=vmid)
        return payload.get("data")

    def _qemu(self, vmid: int, suffix: str = "") -> str:
        return f"/nodes/{self.node}/qemu/{int(vmid)}{suffix}"

    def _task(self, upid: Any, vmid: Optional[int]) -> TaskHandle:
        if not upid or not isinstance(upid, str):
            raise TransportError(f"Hypervisor did not return a task id (got {upid!r})", vmid=vmid)
        return TaskHandle(upid, self.waiter, vmid=vmid)

    # -------------------------- reads --------------------------
    def query_vms(self) -> List[Dict[str, Any]]:
        """GET /nodes/{node}/qemu: live VM listing."""
        return self._request("GET", f"/nodes/{self.node}/qemu") or []

    def query_status(self, vmid: int) -> Dict[str, Any]:
        """GET /nodes/{node}/qemu/{vmid}/status/current"""
        return self._request("GET", self._qemu(vmid, "/status/current"), vmid=vmid) or {}

    def query_config(self, vmid: int) -> Dict[str, Any]:
        """GET /nodes/{node}/qemu/{vmid}/config"""
        return self._request("GET", self._qemu(vmid, "/config"), vmid=vmid) or {}

    def is_running(self, vmid: int) -> bool:
        return self.query_status(vmid).get("status") == "running"

    def node_status(self) -> Dict[str, Any]:
        """Summarize /nodes/{node}/status for dashboards and health checks."""
        status = self._request("GET", f"/nodes/{self.node}/status") or {}
        memory = status.get("memory") or {}
        used = memory.get("used") or 0
        total = memory.get("total") or 0
        gib = 1024 ** 3
        return {
            "node": self.node,
            "status": "online" if status.get("pveversion") else "unknown",
            "cpu": {
                "usage": round((status.get("cpu") or 0) * 100),
                "cores": (status.get("cpuinfo") or {}).get("cpus"),
            },
            "memory": {
                "used": round(used / gib, 2),
                "total": round(total / gib, 2),
                "usage": round(used / total * 100) if total else 0,
            },
            "uptime": format_uptime(status.get("uptime") or 0),
            "uptime_seconds": status.get("uptime") or 0,
            "loadavg": status.get("loadavg") or [0, 0, 0],
            "pve_version": status.get("pveversion") or "unknown",
            "kernel_version": status.get("kversion") or "unknown",
        }

    # -------------------------- power actions --------------------------
    def start(self, vmid: int) -> TaskHandle:
        return self._task(self._request("POST", self._qemu(vmid, "/status/start"), vmid=vmid), vmid)

    def stop(self, vmid: int) -> TaskHandle:
        """Hard stop (power off)."""
        return self._task(self._request("POST", self._qemu(vmid, "/status/stop"), vmid=vmid), vmid)

    def shutdown(self, vmid: int) -> TaskHandle:
        """ACPI shutdown; a no-op on an already stopped VM."""
        return self._task(self._request("POST", self._qemu(vmid, "/status/shutdown"), vmid=vmid), vmid)

    def reboot(self, vmid: int) -> TaskHandle:
        return self._task(self._request("POST", self._qemu(vmid, "/status/reboot"), vmid=vmid), vmid)

    def destroy(self, vmid: int) -> TaskHandle:
        """DELETE /nodes/{node}/qemu/{vmid}: remove the VM and its disks."""
        return self._task(self._request("DELETE", self._qemu(vmid), params={"purge": 1}, vmid=vmid), vmid)

    # -------------------------- provisioning --------------------------
    def clone_from_template(
        self,
        source_id: int,
        target_id: int,
        name: str,
        full_clone: bool = False,
        description: Optional[str] = None,
    ) -> TaskHandle:
        """POST /qemu/{source}/clone: linked (copy-on-write) clone unless full_clone."""
        params: Dict[str, Any] = {
            "newid": int(target_id),
            "name": name,
            "full": 1 if full_clone else 0,
            "target": self.node,
        }
        if description:
            params["description"] = description
        logger.info(
            "Creating %s clone of VM %s -> %s (%s)",
            "full" if full_clone else "linked",
            source_id,
            target_id,
            name,
        )
        upid = self._request("POST", self._qemu(source_id, "/clone"), data=params, vmid=target_id)
        return self._task(upid, target_id)

    def configure(self, vmid: int, delta: Dict[str, Any]) -> Any:
        """Partial config update (cores, memory, description); idempotent."""
        unknown = set(delta) - CONFIGURABLE_KEYS
        if unknown:
            raise ValueError(f"Unsupported VM config keys: {', '.join(sorted(unknown))}")
        if not delta:
            return None
        logger.info("Updating VM %s configuration: %s", vmid, delta)
        return self._request("PUT", self._qemu(vmid, "/config"), data=dict(delta), vmid=vmid)

    def allocate_next_id(self, id_range: Optional[Tuple[int, int]] = None) -> int:
        """Return the first id in range not present in the live listing.

        Two callers in different processes can observe the same free id.
        """
        start, end = id_range or self.vmid_range
        used = set()
        for vm in self.query_vms():
            try:
                used.add(int(vm.get("vmid")))
            except (TypeError, ValueError):
                continue
        for vmid in range(int(start), int(end) + 1):
            if vmid not in used:
                return vmid
        raise ResourceExhausted(f"No available VM IDs in range {start}-{end}")

    def plan_config(self, plan_type: str) -> Dict[str, Any]:
        cfg = self.plans.get(plan_type) or {}
        return {k: v for k, v in cfg.items() if k in CONFIGURABLE_KEYS}

    def create_vm_from_template(
        self,
        template_id: int,
        owner_ref: str,
        index: int,
        plan_type: str,
        vm_count: int,
        on_step: Optional[Callable[[str, int], None]] = None,
    ) -> VMDescriptor:
        """Allocate, linked-clone, configure and start one VM for an owner.

        Any failure raises and affects only this VM; the caller decides what
        happens to its siblings.
        """
        name = f"{owner_ref}-{int(index):02d}"
        logger.info("Creating VM %d/%d for %s, plan: %s", index, vm_count, owner_ref, plan_type)

        def _step(step: str, vmid: int) -> None:
            if on_step is not None:
                on_step(step, vmid)

        with self._allocation_lock:
            vmid = self.allocate_next_id()
            _step("allocated", vmid)
            logger.info("Cloning template %s to VM %s (%s)", template_id, vmid, name)
            clone = self.clone_from_template(
                template_id,
                vmid,
                name,
                full_clone=False,
                description=f"Auto-created VM for {owner_ref} - Plan: {plan_type}",
            )
        clone.wait()
        _step("cloned", vmid)
        logger.info("Clone operation completed for VM %s", vmid)

        vm_config = self.plan_config(plan_type)
        if vm_config:
            logger.info("Applying plan-specific configuration for %s: %s", plan_type, vm_config)
            self.configure(vmid, vm_config)
        _step("configured", vmid)

        logger.info("Starting VM %s", vmid)
        self.start(vmid).wait()
        _step("started", vmid)
        logger.info("Created and started VM %s (%s) for %s", vmid, name, owner_ref)
        return VMDescriptor(vmid=vmid, name=name, status="running", plan_type=plan_type, config=vm_config)

    # -------------------------- guest agent --------------------------
    def upload_file(self, vmid: int, local_path: Union[str, Path], remote_path: str) -> Any:
        """Write a local file into the guest through the QEMU guest agent."""
        content = Path(local_path).read_bytes()
        if len(content) > MAX_AGENT_FILE_BYTES:
            raise VMOperationError(
                f"File {local_path} is {len(content)} bytes; guest agent limit is {MAX_AGENT_FILE_BYTES}",
                vmid=vmid,
            )
        data = {
            "file": remote_path,
            "content": base64.b64encode(content).decode("ascii"),
            "encode": 0,
        }
        return self._request("POST", self._qemu(vmid, "/agent/file-write"), data=data, vmid=vmid)

    def execute_command(self, vmid: int, command: Union[str, Iterable[str]]) -> Dict[str, Any]:
        """Run a command through the guest agent; returns {'pid': ...}."""
        argv = [command] if isinstance(command, str) else list(command)
        return self._request("POST", self._qemu(vmid, "/agent/exec"), data={"command": argv}, vmid=vmid) or {}

    # -------------------------- tasks --------------------------
    def _task_status(self, upid: str) -> Dict[str, Any]:
        return self._request("GET", f"/nodes/{self.node}/tasks/{upid}/status") or {}

    def wait_for_task(
        self,
        task_id: Union[str, TaskHandle],
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        backoff: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Poll until the task stops. Timeout is in seconds; the remote task is never cancelled."""
        vmid = None
        if isinstance(task_id, TaskHandle):
            vmid = task_id.vmid
            task_id = task_id.task_id
        return self.waiter.wait(
            task_id,
            timeout=timeout,
            poll_interval=poll_interval,
            backoff=backoff,
            cancel_event=cancel_event,
            vmid=vmid,
        )
