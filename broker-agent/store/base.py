from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from models import Account, AuditEntry, LifecycleFlags, Subscription


class StoreError(Exception):
    """Generic record store error."""

    pass


class StoreUnavailable(StoreError):
    """The backing store cannot be read or written. Aborts the current tick or workflow."""

    pass


class AssignmentConflict(StoreError):
    """A VM id is already assigned to a different owner."""

    def __init__(self, vm_id: int, current_owner: int):
        super().__init__(f"VM {vm_id} is already assigned to owner {current_owner}")
        self.vm_id = vm_id
        self.current_owner = current_owner


@runtime_checkable
class RecordStore(Protocol):
    """Contract for the subscription / VM assignment store.
    Semantics:
      - update_subscription(): ordinary field update; never touches lifecycle flags.
      - merge_lifecycle_flags(): read-modify-write of the flags document; unknown
        keys written by others survive.
      - assign_vm(): idempotent for the same owner; AssignmentConflict otherwise.
      - remove_vm(): idempotent; must not fail if the row is already gone.
      - log_action(): append-only.
    Notes:
      - Raise StoreUnavailable when the backing store cannot be reached.
    """

    def get_account(self, owner_id: int) -> Optional[Account]:
        ...

    def list_accounts(self) -> List[Account]:
        ...

    def get_subscription(self, owner_id: int) -> Optional[Subscription]:
        ...

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
        ...

    def merge_lifecycle_flags(self, owner_id: int, mutator: Callable[[LifecycleFlags], None]) -> LifecycleFlags:
        ...

    def list_vm_ids(self, owner_id: int) -> List[int]:
        ...

    def find_vm_owner(self, vm_id: int) -> Optional[int]:
        ...

    def assign_vm(self, owner_id: int, vm_id: int) -> None:
        ...

    def remove_vm(self, owner_id: int, vm_id: int) -> None:
        ...

    def log_action(
        self,
        owner_id: Optional[int],
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> None:
        ...

    def list_actions(self, owner_id: Optional[int] = None) -> List[AuditEntry]:
        ...
