"""
Tests for the hypervisor REST client.
"""

import base64
from datetime import datetime, timedelta, timezone

import pytest
import requests

from conftest import FakeResponse
from hypervisor import (
    AuthError,
    HypervisorClient,
    ResourceExhausted,
    TaskFailedError,
    TaskHandle,
    TransportError,
    VMOperationError,
)
from hypervisor.client import format_uptime
from hypervisor.session import SessionState

OK_TASK = {"status": "stopped", "exitstatus": "OK"}


class TestConstruction:
    """Tests for URL handling and config wiring."""

    def test_scheme_added_and_api_prefix(self, client):
        assert client.base_url == "https://pve.example.com:8006/api2/json"

    def test_explicit_scheme_kept(self, fake_http):
        c = HypervisorClient("http://10.0.0.5:8006/", "u", "p", "pve", http=fake_http)
        assert c.base_url == "http://10.0.0.5:8006/api2/json"

    def test_from_config_disables_verification(self):
        c = HypervisorClient.from_config(
            {"url": "pve", "username": "u", "password": "p", "node": "n1", "verify_ssl": "false"}
        )
        assert c.verify is False
        assert c.node == "n1"
        assert c.vmid_range == (3001, 3999)

    def test_from_config_custom_range(self):
        c = HypervisorClient.from_config({"url": "pve", "node": "n1", "vmid_range": [5000, 5010]})
        assert c.vmid_range == (5000, 5010)
        assert c.verify is True


class TestAuthentication:
    """Tests for ticket acquisition and lazy refresh."""

    def test_authenticate_stores_ticket_and_csrf(self, client, fake_http):
        assert client.session.state() is SessionState.UNAUTHENTICATED
        assert client.authenticate() is True

        assert client.session.ticket == "PVE:root@pam:TICKET"
        assert client.session.csrf_token == "CSRF123"
        assert client.session.state() is SessionState.AUTHENTICATED
        call = fake_http.calls[0]
        assert call["method"] == "POST"
        assert call["path"] == "/access/ticket"
        assert call["data"] == {"username": "root@pam", "password": "secret"}

    def test_ticket_lifetime_is_two_hours(self, client):
        before = datetime.now(timezone.utc)
        client.authenticate()
        lifetime = client.session.expires_at - before
        assert timedelta(hours=1, minutes=59) < lifetime <= timedelta(hours=2, seconds=1)

    def test_rejected_credentials_raise_auth_error(self, client, fake_http):
        fake_http.add("POST", "/access/ticket", FakeResponse(401, {"data": None}))
        with pytest.raises(AuthError):
            client.authenticate()

    def test_missing_ticket_raises_auth_error(self, client, fake_http):
        fake_http.data("POST", "/access/ticket", {"username": "root@pam"})
        with pytest.raises(AuthError, match="no ticket"):
            client.authenticate()

    def test_network_error_raises_auth_error(self, client, fake_http):
        fake_http.add("POST", "/access/ticket", requests.exceptions.ConnectionError("refused"))
        with pytest.raises(AuthError):
            client.authenticate()

    def test_session_reused_until_expiry(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/qemu", [])
        client.query_vms()
        client.query_vms()
        assert fake_http.paths().count("/access/ticket") == 1

    def test_expired_session_reauthenticates(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/qemu", [])
        client.query_vms()
        client.session.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        assert client.session.state() is SessionState.EXPIRED

        client.query_vms()
        assert fake_http.paths().count("/access/ticket") == 2

    def test_401_resets_session(self, client, fake_http):
        fake_http.add(
            "GET",
            "/nodes/pve/qemu/3001/status/current",
            [FakeResponse(401, {"data": None}), FakeResponse(200, {"data": {"status": "running"}})],
        )
        with pytest.raises(TransportError) as exc:
            client.query_status(3001)
        assert exc.value.status_code == 401
        assert client.session.state() is SessionState.UNAUTHENTICATED

        assert client.query_status(3001) == {"status": "running"}
        assert fake_http.paths().count("/access/ticket") == 2


class TestRequests:
    """Tests for request shape and error mapping."""

    def test_cookie_on_every_call_csrf_on_writes(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/qemu/3001/status/current", {"status": "stopped"})
        fake_http.data("POST", "/nodes/pve/qemu/3001/status/start", "UPID:pve:start")
        client.query_status(3001)
        client.start(3001)

        get_call, post_call = fake_http.calls[1], fake_http.calls[2]
        assert get_call["cookies"] == {"PVEAuthCookie": "PVE:root@pam:TICKET"}
        assert "CSRFPreventionToken" not in get_call["headers"]
        assert post_call["cookies"] == {"PVEAuthCookie": "PVE:root@pam:TICKET"}
        assert post_call["headers"]["CSRFPreventionToken"] == "CSRF123"

    def test_server_error_is_transport_error_for_that_vm(self, client, fake_http):
        fake_http.add("POST", "/nodes/pve/qemu/3005/status/shutdown", FakeResponse(500, {"errors": "boom"}))
        with pytest.raises(TransportError) as exc:
            client.shutdown(3005)
        assert exc.value.vmid == 3005
        assert exc.value.status_code == 500
        assert isinstance(exc.value, VMOperationError)

    def test_connection_error_is_transport_error(self, client, fake_http):
        client.authenticate()
        fake_http.add("GET", "/nodes/pve/qemu", requests.exceptions.Timeout("slow"))
        with pytest.raises(TransportError):
            client.query_vms()

    def test_power_actions_return_task_handles(self, client, fake_http):
        fake_http.data("POST", "/nodes/pve/qemu/3001/status/stop", "UPID:pve:stop")
        handle = client.stop(3001)
        assert isinstance(handle, TaskHandle)
        assert handle.task_id == "UPID:pve:stop"
        assert handle.vmid == 3001

    def test_missing_upid_is_an_error(self, client, fake_http):
        fake_http.data("POST", "/nodes/pve/qemu/3001/status/reboot", None)
        with pytest.raises(TransportError, match="task id"):
            client.reboot(3001)

    def test_destroy_purges(self, client, fake_http):
        fake_http.data("DELETE", "/nodes/pve/qemu/3001", "UPID:pve:destroy")
        client.destroy(3001)
        assert fake_http.calls[-1]["params"] == {"purge": 1}

    def test_is_running(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/qemu/3001/status/current", {"status": "running"})
        fake_http.data("GET", "/nodes/pve/qemu/3002/status/current", {"status": "stopped"})
        assert client.is_running(3001) is True
        assert client.is_running(3002) is False

    def test_node_status_summary(self, client, fake_http):
        fake_http.data(
            "GET",
            "/nodes/pve/status",
            {
                "cpu": 0.25,
                "cpuinfo": {"cpus": 16},
                "memory": {"used": 8 * 1024 ** 3, "total": 32 * 1024 ** 3},
                "uptime": 90061,
                "pveversion": "pve-manager/8.1.3",
                "kversion": "Linux 6.5",
            },
        )
        status = client.node_status()
        assert status["status"] == "online"
        assert status["cpu"] == {"usage": 25, "cores": 16}
        assert status["memory"]["usage"] == 25
        assert status["uptime"] == "1d 1h 1m"


class TestAllocation:
    """Tests for VM id allocation."""

    def test_first_free_id_in_range(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/qemu", [{"vmid": 3000}, {"vmid": 3001}, {"vmid": "3002"}, {"vmid": 3004}])
        assert client.allocate_next_id() == 3003

    def test_exhausted_range(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/qemu", [{"vmid": 10}, {"vmid": 11}])
        with pytest.raises(ResourceExhausted, match="No available VM IDs in range 10-11"):
            client.allocate_next_id((10, 11))


class TestConfigure:
    """Tests for partial config updates."""

    def test_unknown_keys_rejected(self, client, fake_http):
        with pytest.raises(ValueError, match="net0"):
            client.configure(3001, {"cores": 2, "net0": "virtio"})
        assert fake_http.calls == []

    def test_empty_delta_is_noop(self, client, fake_http):
        assert client.configure(3001, {}) is None
        assert fake_http.calls == []

    def test_put_config(self, client, fake_http):
        fake_http.data("PUT", "/nodes/pve/qemu/3001/config", None)
        client.configure(3001, {"cores": 4, "memory": 8192})
        assert fake_http.calls[-1]["data"] == {"cores": 4, "memory": 8192}


class TestCreateFromTemplate:
    """Tests for the allocate -> clone -> configure -> start sequence."""

    def _script(self, fake_http, clone_task=OK_TASK):
        fake_http.data("GET", "/nodes/pve/qemu", [{"vmid": 3000}, {"vmid": 3001}])
        fake_http.data("POST", "/nodes/pve/qemu/3000/clone", "UPID:pve:clone")
        fake_http.data("GET", "/nodes/pve/tasks/UPID:pve:clone/status", clone_task)
        fake_http.data("PUT", "/nodes/pve/qemu/3002/config", None)
        fake_http.data("POST", "/nodes/pve/qemu/3002/status/start", "UPID:pve:start")
        fake_http.data("GET", "/nodes/pve/tasks/UPID:pve:start/status", OK_TASK)

    def test_creates_linked_clone_with_plan_hardware(self, client, fake_http):
        self._script(fake_http)
        steps = []
        vm = client.create_vm_from_template(
            3000, "a1b2c3d4", 1, "kd_drop", 1, on_step=lambda step, vmid: steps.append((step, vmid))
        )

        assert vm.vmid == 3002
        assert vm.name == "a1b2c3d4-01"
        assert vm.status == "running"
        assert vm.plan_type == "kd_drop"
        assert steps == [("allocated", 3002), ("cloned", 3002), ("configured", 3002), ("started", 3002)]

        clone_call = next(c for c in fake_http.calls if c["path"] == "/nodes/pve/qemu/3000/clone")
        assert clone_call["data"]["newid"] == 3002
        assert clone_call["data"]["full"] == 0
        assert clone_call["data"]["name"] == "a1b2c3d4-01"
        config_call = next(c for c in fake_http.calls if c["method"] == "PUT")
        assert config_call["data"]["cores"] == 4
        assert config_call["data"]["memory"] == 8192

    def test_failed_clone_raises_for_that_vm(self, client, fake_http):
        self._script(fake_http, clone_task={"status": "stopped", "exitstatus": "clone failed: no space"})
        steps = []
        with pytest.raises(TaskFailedError) as exc:
            client.create_vm_from_template(3000, "a1b2c3d4", 2, "hour_booster", 3, on_step=lambda s, v: steps.append(s))
        assert exc.value.vmid == 3002
        assert steps == ["allocated"]
        assert "/nodes/pve/qemu/3002/status/start" not in fake_http.paths()


class TestGuestAgent:
    """Tests for guest-agent file upload and command execution."""

    def test_upload_file_base64(self, client, fake_http, tmp_path):
        local = tmp_path / "hwho.dat"
        local.write_bytes(b"license-key")
        fake_http.data("POST", "/nodes/pve/qemu/3001/agent/file-write", None)

        client.upload_file(3001, local, "C:\\hwho\\hwho.dat")
        data = fake_http.calls[-1]["data"]
        assert data["file"] == "C:\\hwho\\hwho.dat"
        assert base64.b64decode(data["content"]) == b"license-key"

    def test_oversized_file_rejected(self, client, fake_http, tmp_path):
        local = tmp_path / "big.dat"
        local.write_bytes(b"x" * (61 * 1024))
        with pytest.raises(VMOperationError) as exc:
            client.upload_file(3001, local, "C:\\big.dat")
        assert exc.value.vmid == 3001

    def test_execute_command_argv(self, client, fake_http):
        fake_http.data("POST", "/nodes/pve/qemu/3001/agent/exec", {"pid": 77})
        assert client.execute_command(3001, ["powershell.exe", "-File", "x.ps1"]) == {"pid": 77}
        assert fake_http.calls[-1]["data"] == {"command": ["powershell.exe", "-File", "x.ps1"]}


class TestWaitForTask:
    """Tests for wait_for_task through the task status endpoint."""

    def test_returns_final_status(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/tasks/UPID:x/status", OK_TASK)
        assert client.wait_for_task("UPID:x") == OK_TASK

    def test_accepts_handle(self, client, fake_http):
        fake_http.data("GET", "/nodes/pve/tasks/UPID:y/status", {"status": "stopped", "exitstatus": "ERROR"})
        with pytest.raises(TaskFailedError) as exc:
            client.wait_for_task(TaskHandle("UPID:y", client.waiter, vmid=3009))
        assert exc.value.vmid == 3009


def test_format_uptime():
    assert format_uptime(0) == "0m"
    assert format_uptime(3720) == "1h 2m"
    assert format_uptime(2 * 86400 + 60) == "2d 0h 1m"
