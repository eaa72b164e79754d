#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
JSON file record store.
Keeps accounts, subscriptions, VM assignments and the audit log in a single
document; every mutation is written through atomically. With no path the
store is memory-only.
"""
import dataclasses
import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from models import Account, AuditEntry, LifecycleFlags, Subscription, parse_timestamp, to_iso, utcnow

from .base import AssignmentConflict, StoreUnavailable

logger = logging.getLogger("vm-broker")


def _empty() -> Dict[str, Any]:
    return {"accounts": {}, "subscriptions": {}, "vm_assignments": [], "audit_log": []}


class JsonRecordStore:
    """RecordStore backed by one JSON document."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._data: Optional[Dict[str, Any]] = None

    # -------------------------- persistence --------------------------
    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        data = _empty()
        if self.path is not None and self.path.exists():
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    loaded = json.load(f)
            except (OSError, ValueError) as e:
                raise StoreUnavailable(f"Failed to read record store {self.path}: {e}") from e
            if not isinstance(loaded, dict):
                raise StoreUnavailable(f"Record store {self.path} is not a JSON object")
            for key, value in loaded.items():
                data[key] = value
        self._data = data
        return data

    def _save(self) -> None:
        if self.path is None or self._data is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".records-", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_name, self.path)
        except OSError as e:
            raise StoreUnavailable(f"Failed to write record store {self.path}: {e}") from e

    # -------------------------- accounts --------------------------
    def add_account(self, account: Account) -> Account:
        with self._lock:
            data = self._load()
            data["accounts"][str(account.owner_id)] = dataclasses.asdict(account)
            self._save()
        return account

    def get_account(self, owner_id: int) -> Optional[Account]:
        with self._lock:
            raw = self._load()["accounts"].get(str(owner_id))
        return Account(**raw) if raw else None

    def list_accounts(self) -> List[Account]:
        with self._lock:
            rows = list(self._load()["accounts"].values())
        return [Account(**row) for row in rows]

    # -------------------------- subscriptions --------------------------
    def get_subscription(self, owner_id: int) -> Optional[Subscription]:
        with self._lock:
            raw = self._load()["subscriptions"].get(str(owner_id))
        if not raw:
            return None
        return Subscription(
            owner_id=int(owner_id),
            plan=raw.get("plan"),
            status=raw.get("status", "active"),
            expires_at=parse_timestamp(raw.get("expires_at")),
            external_refs=dict(raw.get("external_refs") or {}),
            flags=LifecycleFlags.from_document(raw.get("flags")),
        )

    def update_subscription(
        self,
        owner_id: int,
        plan: Optional[str] = None,
        status: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        external_refs: Optional[Dict[str, Any]] = None,
        clear_expiry: bool = False,
        clear_plan: bool = False,
    ) -> Subscription:
        with self._lock:
            subs = self._load()["subscriptions"]
            raw = subs.setdefault(str(owner_id), {"plan": None, "status": "active", "expires_at": None, "flags": {}})
            if plan is not None:
                raw["plan"] = plan
            elif clear_plan:
                raw["plan"] = None
            if status is not None:
                raw["status"] = status
            if expires_at is not None:
                raw["expires_at"] = to_iso(expires_at)
            elif clear_expiry:
                raw["expires_at"] = None
            if external_refs:
                refs = raw.setdefault("external_refs", {})
                refs.update(external_refs)
            self._save()
        return self.get_subscription(owner_id)

    def merge_lifecycle_flags(self, owner_id: int, mutator: Callable[[LifecycleFlags], None]) -> LifecycleFlags:
        with self._lock:
            subs = self._load()["subscriptions"]
            raw = subs.setdefault(str(owner_id), {"plan": None, "status": "active", "expires_at": None, "flags": {}})
            flags = LifecycleFlags.from_document(raw.get("flags"))
            mutator(flags)
            raw["flags"] = flags.to_document()
            self._save()
        return flags

    # -------------------------- VM assignments --------------------------
    def list_vm_ids(self, owner_id: int) -> List[int]:
        with self._lock:
            rows = self._load()["vm_assignments"]
            return [int(r["vm_id"]) for r in rows if int(r["owner_id"]) == int(owner_id)]

    def find_vm_owner(self, vm_id: int) -> Optional[int]:
        with self._lock:
            for row in self._load()["vm_assignments"]:
                if int(row["vm_id"]) == int(vm_id):
                    return int(row["owner_id"])
        return None

    def assign_vm(self, owner_id: int, vm_id: int) -> None:
        with self._lock:
            current = self.find_vm_owner(vm_id)
            if current is not None:
                if current != int(owner_id):
                    raise AssignmentConflict(int(vm_id), current)
                return
            self._load()["vm_assignments"].append(
                {"owner_id": int(owner_id), "vm_id": int(vm_id), "created_at": to_iso(utcnow())}
            )
            self._save()

    def remove_vm(self, owner_id: int, vm_id: int) -> None:
        with self._lock:
            data = self._load()
            before = len(data["vm_assignments"])
            data["vm_assignments"] = [
                r
                for r in data["vm_assignments"]
                if not (int(r["owner_id"]) == int(owner_id) and int(r["vm_id"]) == int(vm_id))
            ]
            if len(data["vm_assignments"]) != before:
                self._save()

    # -------------------------- audit --------------------------
    def log_action(
        self,
        owner_id: Optional[int],
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        entry = {
            "owner_id": owner_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details,
            "actor": actor,
            "created_at": to_iso(utcnow()),
        }
        with self._lock:
            self._load()["audit_log"].append(entry)
            self._save()

    def list_actions(self, owner_id: Optional[int] = None) -> List[AuditEntry]:
        with self._lock:
            rows = list(self._load()["audit_log"])
        entries = []
        for row in rows:
            if owner_id is not None and row.get("owner_id") != owner_id:
                continue
            entries.append(
                AuditEntry(
                    owner_id=row.get("owner_id"),
                    action=row["action"],
                    resource_type=row.get("resource_type"),
                    resource_id=row.get("resource_id"),
                    details=row.get("details"),
                    actor=row.get("actor"),
                    created_at=parse_timestamp(row.get("created_at")) or utcnow(),
                )
            )
        return entries
