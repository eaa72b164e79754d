#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data models for the VM broker.
This module contains the data classes used throughout the application.
"""
import dataclasses
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

ROLE_ADMIN = "admin"
PLAN_NONE = "none"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings, epoch seconds or datetimes into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    CANCEL_PENDING = "cancel_pending"


class SetupStatus(str, Enum):
    PROVISIONING = "provisioning"
    READY_FOR_SETUP = "ready_for_setup"
    SETUP_IN_PROGRESS = "setup_in_progress"
    FILE_UPLOADED = "file_uploaded"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclasses.dataclass
class Account:
    """Customer record owned by the external user store."""

    owner_id: int
    username: str
    account_ref: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


# Legacy document keys -> structured field names
_LEGACY_FLAG_KEYS = {
    "vmsShutdownOnExpiry": "shutdown_on_expiry",
    "vmsShutdownOnNoSub": "shutdown_on_no_sub",
    "vmsDestroyed": "destroyed",
    "destructionTimestamp": "destroyed_at",
    "renewalTimestamp": "renewed_at",
    "vmAccessRestored": "vm_access_restored",
}


@dataclasses.dataclass
class LifecycleFlags:
    """Idempotency markers for reconciliation actions.

    Unknown document keys are carried in ``extra`` so a merge-write never drops
    fields written by other components.
    """

    shutdown_on_expiry: bool = False
    shutdown_on_expiry_at: Optional[datetime] = None
    shutdown_on_no_sub: bool = False
    shutdown_on_no_sub_at: Optional[datetime] = None
    destroyed: bool = False
    destroyed_at: Optional[datetime] = None
    renewed_at: Optional[datetime] = None
    vm_access_restored: bool = False
    extra: Dict[str, Any] = dataclasses.field(default_factory=dict)

    _BOOL_FIELDS = ("shutdown_on_expiry", "shutdown_on_no_sub", "destroyed", "vm_access_restored")
    _TIME_FIELDS = ("shutdown_on_expiry_at", "shutdown_on_no_sub_at", "destroyed_at", "renewed_at")

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> "LifecycleFlags":
        doc = dict(doc or {})
        # Migrate legacy keys; the single legacy shutdownTimestamp belongs to
        # whichever shutdown flag was set.
        legacy_shutdown_at = doc.pop("shutdownTimestamp", None)
        for old, new in _LEGACY_FLAG_KEYS.items():
            if old in doc and new not in doc:
                doc[new] = doc.pop(old)
            else:
                doc.pop(old, None)
        if legacy_shutdown_at:
            if doc.get("shutdown_on_expiry") and not doc.get("shutdown_on_expiry_at"):
                doc["shutdown_on_expiry_at"] = legacy_shutdown_at
            if doc.get("shutdown_on_no_sub") and not doc.get("shutdown_on_no_sub_at"):
                doc["shutdown_on_no_sub_at"] = legacy_shutdown_at
        flags = cls()
        for name in cls._BOOL_FIELDS:
            if name in doc:
                setattr(flags, name, bool(doc.pop(name)))
        for name in cls._TIME_FIELDS:
            if name in doc:
                setattr(flags, name, parse_timestamp(doc.pop(name)))
        flags.extra = doc
        return flags

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = dict(self.extra)
        for name in self._BOOL_FIELDS:
            if getattr(self, name):
                doc[name] = True
        for name in self._TIME_FIELDS:
            value = getattr(self, name)
            if value is not None:
                doc[name] = to_iso(value)
        return doc

    def mark_shutdown(self, no_subscription: bool, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        if no_subscription:
            self.shutdown_on_no_sub = True
            self.shutdown_on_no_sub_at = now
        else:
            self.shutdown_on_expiry = True
            self.shutdown_on_expiry_at = now

    def mark_destroyed(self, now: Optional[datetime] = None) -> None:
        self.destroyed = True
        self.destroyed_at = now or utcnow()

    def clear_for_renewal(self, now: Optional[datetime] = None) -> None:
        self.shutdown_on_expiry = False
        self.shutdown_on_expiry_at = None
        self.shutdown_on_no_sub = False
        self.shutdown_on_no_sub_at = None
        self.destroyed = False
        self.destroyed_at = None
        self.renewed_at = now or utcnow()
        self.vm_access_restored = True


@dataclasses.dataclass
class Subscription:
    """Entitlement record for one owner."""

    owner_id: int
    plan: Optional[str] = None
    status: str = SubscriptionStatus.ACTIVE.value
    expires_at: Optional[datetime] = None
    external_refs: Dict[str, Any] = dataclasses.field(default_factory=dict)
    flags: LifecycleFlags = dataclasses.field(default_factory=LifecycleFlags)

    @property
    def has_plan(self) -> bool:
        return bool(self.plan) and self.plan != PLAN_NONE


@dataclasses.dataclass
class AuditEntry:
    owner_id: Optional[int]
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    actor: Optional[str] = None
    created_at: datetime = dataclasses.field(default_factory=utcnow)


@dataclasses.dataclass
class PlanDetails:
    plan_type: str
    vm_count: int
    plan_name: str
    config: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class VMDescriptor:
    """Result of a template clone for one owner VM."""

    vmid: int
    name: str
    status: str
    plan_type: str
    config: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class ProvisioningState:
    """In-memory progress of a provisioning run and the manual setup that follows."""

    owner_id: int
    plan_details: PlanDetails
    status: SetupStatus = SetupStatus.PROVISIONING
    vms_created: List[VMDescriptor] = dataclasses.field(default_factory=list)
    vms_pending: int = 0
    setup_required: bool = True
    upload_results: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    automation_results: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = dataclasses.field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    setup_initiated_at: Optional[datetime] = None
    file_uploaded_at: Optional[datetime] = None
    updated_at: datetime = dataclasses.field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "plan_details": dataclasses.asdict(self.plan_details),
            "vms_created": [dataclasses.asdict(vm) for vm in self.vms_created],
            "vms_pending": self.vms_pending,
            "setup_required": self.setup_required,
            "upload_results": list(self.upload_results),
            "automation_results": list(self.automation_results),
            "error": self.error,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "setup_initiated_at": to_iso(self.setup_initiated_at),
            "file_uploaded_at": to_iso(self.file_uploaded_at),
        }


class EntitlementEvent(BaseModel):
    """Entitlement change emitted by the billing system."""

    owner_id: int
    plan: Optional[str] = None
    status: str = SubscriptionStatus.ACTIVE.value
    expires_at: Optional[datetime] = None
    external_refs: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    nickname: Optional[str] = None

    def as_plan_event(self) -> Dict[str, Any]:
        """Shape consumed by ProvisioningWorkflow.extract_plan_details."""
        return {
            "id": self.external_refs.get("subscription_id"),
            "metadata": dict(self.metadata),
            "nickname": self.nickname or self.plan,
            "planType": self.metadata.get("planType") or self.plan,
        }


class ProvisionRequest(BaseModel):
    """FastAPI model for an explicit provisioning request."""

    plan_type: Optional[str] = None
    vm_count: Optional[int] = None
    plan_name: Optional[str] = None
    subscription_id: Optional[str] = None

    def as_plan_event(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if self.plan_type:
            metadata["planType"] = self.plan_type
        if self.vm_count is not None:
            metadata["vmCount"] = self.vm_count
        if self.plan_name:
            metadata["planName"] = self.plan_name
        return {"id": self.subscription_id, "metadata": metadata, "nickname": self.plan_name}


class FileUploadRequest(BaseModel):
    """Reference to a setup file already stored on the broker host."""

    file_path: str
    file_name: Optional[str] = None
