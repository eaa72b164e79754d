#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
State management module for the VM broker.
Holds the per-owner provisioning/setup state in memory and persists the
provisioning journal so interrupted VM creations can be reported after a restart.
"""
import json
import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from models import PlanDetails, ProvisioningState, SetupStatus, to_iso, utcnow

logger = logging.getLogger("vm-broker")

# Format: {current_status: {allowed next statuses}}
VALID_TRANSITIONS: Dict[SetupStatus, Set[SetupStatus]] = {
    SetupStatus.PROVISIONING: {SetupStatus.READY_FOR_SETUP, SetupStatus.FAILED},
    SetupStatus.READY_FOR_SETUP: {SetupStatus.SETUP_IN_PROGRESS, SetupStatus.COMPLETED},
    SetupStatus.SETUP_IN_PROGRESS: {SetupStatus.FILE_UPLOADED, SetupStatus.COMPLETED},
    SetupStatus.FILE_UPLOADED: {SetupStatus.COMPLETED},
    SetupStatus.COMPLETED: set(),
    SetupStatus.FAILED: set(),
}


class StateTransitionError(Exception):
    """Raised when a status change would move a provisioning state backwards."""

    pass


class ProvisioningStateStore:
    """Keyed store of ProvisioningState with a background TTL sweeper."""

    def __init__(self, ttl_hours: float = 24, clock: Callable[[], datetime] = utcnow):
        self.ttl_hours = ttl_hours
        self._clock = clock
        self._states: Dict[int, ProvisioningState] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def create(self, owner_id: int, plan_details: PlanDetails) -> ProvisioningState:
        """Start a fresh provisioning run, replacing any previous state."""
        now = self._clock()
        state = ProvisioningState(
            owner_id=owner_id,
            plan_details=plan_details,
            vms_pending=plan_details.vm_count,
            started_at=now,
            updated_at=now,
        )
        with self._lock:
            self._states[owner_id] = state
        return state

    def get(self, owner_id: int) -> Optional[ProvisioningState]:
        with self._lock:
            return self._states.get(owner_id)

    def update(self, owner_id: int, **fields: Any) -> ProvisioningState:
        """Set fields without changing status; bumps updated_at."""
        with self._lock:
            state = self._states[owner_id]
            for key, value in fields.items():
                setattr(state, key, value)
            state.updated_at = self._clock()
            return state

    def advance(self, owner_id: int, status: SetupStatus, **fields: Any) -> ProvisioningState:
        """Move to a later status; same-status calls are no-ops."""
        with self._lock:
            state = self._states.get(owner_id)
            if state is None:
                raise KeyError(owner_id)
            if state.status != status:
                if status not in VALID_TRANSITIONS[state.status]:
                    raise StateTransitionError(
                        f"Cannot move setup for owner {owner_id} from {state.status.value} to {status.value}"
                    )
                logger.info("Setup state for owner %s: %s -> %s", owner_id, state.status.value, status.value)
                state.status = status
            for key, value in fields.items():
                setattr(state, key, value)
            state.updated_at = self._clock()
            return state

    def remove(self, owner_id: int) -> None:
        with self._lock:
            self._states.pop(owner_id, None)

    def owners(self) -> List[int]:
        with self._lock:
            return list(self._states)

    def cleanup(self, max_age_hours: Optional[float] = None) -> int:
        """Drop states whose last transition is older than max_age_hours."""
        max_age = self.ttl_hours if max_age_hours is None else max_age_hours
        cutoff = self._clock() - timedelta(hours=max_age)
        removed = 0
        with self._lock:
            for owner_id, state in list(self._states.items()):
                if state.updated_at < cutoff:
                    del self._states[owner_id]
                    removed += 1
                    logger.info("Cleaned up old setup state for owner %s", owner_id)
        return removed

    # -------------------------- sweeper --------------------------
    def start_sweeper(self, interval_seconds: float = 3600) -> None:
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _run() -> None:
            while not self._stop.wait(interval_seconds):
                try:
                    self.cleanup()
                except Exception as e:
                    logger.error("Setup state sweep failed: %s", e)

        self._sweeper = threading.Thread(target=_run, name="setup-state-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
            self._sweeper = None


class ProvisioningJournal:
    """Persisted step cursor for in-flight VM creations.

    One entry per (owner, index) records the last completed step and the VM id.
    Entries are cleared when the VM is assigned, or when creation fails before
    a clone was dispatched. Anything left is a VM the broker may have created
    but never handed to its owner.
    """

    FILE_NAME = "provisioning-journal.json"

    def __init__(self, journal_dir: Optional[str] = None):
        self.state_file = Path(journal_dir) / self.FILE_NAME if journal_dir else None
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._loaded = False

    def _key(self, owner_id: int, index: int) -> str:
        return f"{owner_id}:{index}"

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.state_file is None or not self.state_file.exists():
            return
        try:
            with self.state_file.open("r", encoding="utf-8") as f:
                self._entries = json.load(f)
            logger.info("Loaded provisioning journal: %d entries", len(self._entries))
        except Exception as e:
            logger.error("Failed to load provisioning journal: %s", e)
            self._entries = {}

    def _save(self) -> None:
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with self.state_file.open("w", encoding="utf-8") as f:
                json.dump(self._entries, f, indent=2)
        except Exception as e:
            logger.error("Failed to save provisioning journal: %s", e)

    def record(self, owner_id: int, index: int, step: str, vmid: Optional[int]) -> None:
        with self._lock:
            self._load()
            self._entries[self._key(owner_id, index)] = {
                "owner_id": owner_id,
                "index": index,
                "vmid": vmid,
                "step": step,
                "updated_at": to_iso(utcnow()),
                "timestamp": time.time(),
            }
            self._save()

    def clear(self, owner_id: int, index: int) -> None:
        with self._lock:
            self._load()
            if self._entries.pop(self._key(owner_id, index), None) is not None:
                self._save()

    def fail(self, owner_id: int, index: int, error: str) -> None:
        """Close out a failed creation; keep the entry only if a clone may exist."""
        with self._lock:
            self._load()
            key = self._key(owner_id, index)
            entry = self._entries.get(key)
            if entry is None:
                return
            if entry["step"] == "allocated":
                del self._entries[key]
            else:
                entry["failed"] = True
                entry["error"] = error
                entry["updated_at"] = to_iso(utcnow())
            self._save()

    def pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            self._load()
            return sorted(self._entries.values(), key=lambda e: (e["owner_id"], e["index"]))
