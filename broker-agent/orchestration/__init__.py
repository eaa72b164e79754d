# VM broker orchestration
from .events import EntitlementEventHandler
from .plans import BASELINE_PLAN, LEGACY_ALIASES, MAX_VMS, MIN_VMS, PlanCatalog
from .provisioning import OwnerNotFound, ProvisioningWorkflow, SetupStateError
from .reconciliation import ReconciliationLoop, RenewalResult

__all__ = [
    "EntitlementEventHandler",
    "PlanCatalog",
    "BASELINE_PLAN",
    "LEGACY_ALIASES",
    "MIN_VMS",
    "MAX_VMS",
    "ProvisioningWorkflow",
    "OwnerNotFound",
    "SetupStateError",
    "ReconciliationLoop",
    "RenewalResult",
]
