"""
Record store for accounts, subscriptions, VM assignments and the audit log.
The production schema lives elsewhere; this package defines the contract the
broker relies on and a JSON file implementation of it.
"""
from .base import AssignmentConflict, RecordStore, StoreError, StoreUnavailable
from .json_store import JsonRecordStore

__all__ = [
    "RecordStore",
    "StoreError",
    "StoreUnavailable",
    "AssignmentConflict",
    "JsonRecordStore",
]
