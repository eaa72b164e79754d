#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Completion tracking for asynchronous hypervisor tasks.

Clone, start, stop, shutdown and destroy return a task id (UPID) that has to be
polled until the control plane reports a terminal state. TaskWaiter does the
polling; TaskHandle is what client calls hand back to their callers.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .errors import TaskCancelled, TaskFailedError, TaskTimeoutError

logger = logging.getLogger("vm-broker")

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_TASK_TIMEOUT = 300.0


class TaskWaiter:
    """Poll a task status callable until the task stops, fails, times out or is cancelled.

    The default schedule is a fixed interval. A backoff factor above 1.0 grows
    the interval after every poll, up to max_poll_interval. Each sleep is cut to
    the time remaining before the deadline, so a timeout fires on schedule even
    when it is shorter than the poll interval.
    """

    def __init__(
        self,
        fetch_status: Callable[[str], Dict[str, Any]],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_TASK_TIMEOUT,
        backoff: float = 1.0,
        max_poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.fetch_status = fetch_status
        self.poll_interval = float(poll_interval)
        self.timeout = float(timeout)
        self.backoff = max(float(backoff), 1.0)
        self.max_poll_interval = float(max_poll_interval) if max_poll_interval else None
        self._clock = clock
        self._sleep = sleep

    def wait(
        self,
        task_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        backoff: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        vmid: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Block until the task finishes successfully and return its final status."""
        timeout = self.timeout if timeout is None else float(timeout)
        interval = self.poll_interval if poll_interval is None else float(poll_interval)
        factor = self.backoff if backoff is None else max(float(backoff), 1.0)
        deadline = self._clock() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise TaskCancelled(task_id, vmid=vmid)
            task = self.fetch_status(task_id) or {}
            if task.get("status") == "stopped":
                exitstatus = task.get("exitstatus")
                if exitstatus == "OK":
                    return task
                raise TaskFailedError(task_id, exitstatus, vmid=vmid)
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TaskTimeoutError(task_id, timeout, vmid=vmid)
            delay = min(interval, remaining)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise TaskCancelled(task_id, vmid=vmid)
            else:
                self._sleep(delay)
            if self._clock() >= deadline:
                logger.warning("Task %s still running after %gs; leaving it on the hypervisor", task_id, timeout)
                raise TaskTimeoutError(task_id, timeout, vmid=vmid)
            interval *= factor
            if self.max_poll_interval:
                interval = min(interval, self.max_poll_interval)


class TaskHandle:
    """Reference to a dispatched task. Call wait() to block on its completion."""

    def __init__(self, task_id: str, waiter: TaskWaiter, vmid: Optional[int] = None):
        self.task_id = task_id
        self.vmid = vmid
        self._waiter = waiter

    def wait(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        return self._waiter.wait(self.task_id, timeout=timeout, cancel_event=cancel_event, vmid=self.vmid)

    def __repr__(self) -> str:
        return f"TaskHandle(task_id={self.task_id!r}, vmid={self.vmid!r})"
