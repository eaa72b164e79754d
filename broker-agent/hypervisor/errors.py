#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error types raised by the hypervisor client.

AuthError aborts the whole tick or workflow call. Everything deriving from
VMOperationError is scoped to a single VM and must not stop sibling work.
"""
from typing import Optional


class HypervisorError(Exception):
    """Base class for hypervisor control-plane errors."""


class AuthError(HypervisorError):
    """Raised when a session ticket cannot be obtained."""


class VMOperationError(HypervisorError):
    """Failure isolated to one VM (or one API call)."""

    def __init__(self, message: str, vmid: Optional[int] = None):
        super().__init__(message)
        self.vmid = vmid


class TransportError(VMOperationError):
    """A single API call failed (network error or non-success response)."""

    def __init__(self, message: str, vmid: Optional[int] = None, status_code: Optional[int] = None):
        super().__init__(message, vmid=vmid)
        self.status_code = status_code


class TaskFailedError(VMOperationError):
    """A dispatched task reached a terminal state without success."""

    def __init__(self, task_id: str, exitstatus: Optional[str], vmid: Optional[int] = None):
        super().__init__(f"Task {task_id} failed: {exitstatus}", vmid=vmid)
        self.task_id = task_id
        self.exitstatus = exitstatus


class TaskTimeoutError(VMOperationError, TimeoutError):
    """A dispatched task did not reach a terminal state in time."""

    def __init__(self, task_id: str, timeout: float, vmid: Optional[int] = None):
        super().__init__(f"Task {task_id} timeout after {timeout:g} seconds", vmid=vmid)
        self.task_id = task_id
        self.timeout = timeout


class TaskCancelled(VMOperationError):
    """Waiting was abandoned through the cancel event. The remote task keeps running."""

    def __init__(self, task_id: str, vmid: Optional[int] = None):
        super().__init__(f"Wait for task {task_id} cancelled", vmid=vmid)
        self.task_id = task_id


class ResourceExhausted(VMOperationError):
    """No free VM id is left in the configured range."""
