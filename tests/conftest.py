"""
Pytest configuration and shared fixtures for VM broker tests.

Provides a scripted HTTP transport for the hypervisor client and MagicMock
clients for the orchestration layer.
"""

import itertools
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

# Add broker-agent to path
sys.path.insert(0, str(Path(__file__).parent.parent / "broker-agent"))

from config import DEFAULTS  # noqa: E402
from hypervisor import HypervisorClient  # noqa: E402
from models import Account, VMDescriptor  # noqa: E402
from orchestration import PlanCatalog, ProvisioningWorkflow, ReconciliationLoop  # noqa: E402
from state import ProvisioningJournal, ProvisioningStateStore  # noqa: E402
from store import JsonRecordStore  # noqa: E402


# ============ HTTP Fixtures ============

class FakeResponse:
    """Just enough of requests.Response for the client."""

    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)
        self.reason = "OK" if status_code < 400 else "Error"

    def json(self):
        if self._payload is None and self.text:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeHTTP:
    """Routes (method, path) to canned responses and records every call.

    A route value may be a FakeResponse, a list of them (consumed in order,
    last one repeats), a callable taking the call kwargs, or an exception.
    """

    def __init__(self):
        self.routes: Dict[tuple, Any] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, path: str, response: Any) -> None:
        self.routes[(method, path)] = response

    def data(self, method: str, path: str, data: Any, status_code: int = 200) -> None:
        self.add(method, path, FakeResponse(status_code, {"data": data}))

    def request(self, method: str, url: str, **kwargs):
        path = url.split("/api2/json", 1)[1]
        self.calls.append({"method": method, "path": path, **kwargs})
        route = self.routes.get((method, path))
        if route is None:
            return FakeResponse(404, {"errors": f"no route for {method} {path}"})
        if isinstance(route, Exception):
            raise route
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            return route(**kwargs)
        return route

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [c["path"] for c in self.calls if method is None or c["method"] == method]


@pytest.fixture
def fake_http() -> FakeHTTP:
    http = FakeHTTP()
    http.data("POST", "/access/ticket", {"ticket": "PVE:root@pam:TICKET", "CSRFPreventionToken": "CSRF123"})
    return http


@pytest.fixture
def client(fake_http) -> HypervisorClient:
    return HypervisorClient(
        url="pve.example.com:8006",
        username="root@pam",
        password="secret",
        node="pve",
        plans=DEFAULTS["plans"],
        http=fake_http,
    )


# ============ Store Fixtures ============

@pytest.fixture
def store() -> JsonRecordStore:
    """In-memory store with two customers and one administrator."""
    s = JsonRecordStore()
    s.add_account(Account(owner_id=1, username="alice", account_ref="a1b2c3d4"))
    s.add_account(Account(owner_id=2, username="bob", account_ref="e5f6a7b8"))
    s.add_account(Account(owner_id=99, username="root", account_ref="ad000000", role="admin"))
    return s


# ============ Orchestration Fixtures ============

@pytest.fixture
def mock_client():
    """MagicMock hypervisor client that clones VMs with ids 3001, 3002, ..."""
    hv = MagicMock(spec=HypervisorClient)
    counter = itertools.count(3001)

    def _create(template_id, owner_ref, index, plan_type, vm_count, on_step=None):
        vmid = next(counter)
        if on_step is not None:
            for step in ("allocated", "cloned", "configured", "started"):
                on_step(step, vmid)
        return VMDescriptor(vmid=vmid, name=f"{owner_ref}-{index:02d}", status="running", plan_type=plan_type)

    hv.create_vm_from_template.side_effect = _create
    hv.is_running.return_value = True
    hv.execute_command.return_value = {"pid": 4242}
    return hv


@pytest.fixture
def states() -> ProvisioningStateStore:
    return ProvisioningStateStore()


@pytest.fixture
def journal(tmp_path: Path) -> ProvisioningJournal:
    return ProvisioningJournal(str(tmp_path / "journal"))


@pytest.fixture
def catalog() -> PlanCatalog:
    return PlanCatalog(DEFAULTS["plans"])


@pytest.fixture
def workflow(mock_client, store, states, catalog, journal) -> ProvisioningWorkflow:
    return ProvisioningWorkflow(mock_client, store, states, catalog, template_vmid=3000, journal=journal)


@pytest.fixture
def loop(mock_client, store) -> ReconciliationLoop:
    return ReconciliationLoop(mock_client, store, sleep=MagicMock())
