"""Plan catalog: maps billing plan identifiers to VM count and hardware."""
import logging
from typing import Any, Dict, Mapping, Optional

from models import PlanDetails

logger = logging.getLogger("vm-broker")

BASELINE_PLAN = "hour_booster"
MIN_VMS = 1
MAX_VMS = 10

# Legacy plan names (substring, lowercase) -> plan type
LEGACY_ALIASES = (
    ("basic", "hour_booster"),
    ("premium", "kd_drop"),
)


def _parse_count(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return MIN_VMS


class PlanCatalog:
    def __init__(self, plans: Mapping[str, Dict[str, Any]], baseline: str = BASELINE_PLAN, max_vms: int = MAX_VMS):
        self.plans = dict(plans)
        self.baseline = baseline if baseline in self.plans or not self.plans else next(iter(self.plans))
        self.max_vms = max(int(max_vms), MIN_VMS)

    def config_for(self, plan_type: str) -> Dict[str, Any]:
        return dict(self.plans.get(plan_type) or {})

    def normalize(self, plan_type: Optional[str], plan_name: str) -> str:
        lowered = (plan_name or "").lower()
        for needle, alias in LEGACY_ALIASES:
            if needle in lowered:
                return alias
        if plan_type in self.plans:
            return plan_type
        if plan_type:
            logger.warning("Unknown plan type %r, falling back to %s", plan_type, self.baseline)
        return self.baseline

    def extract(self, event: Mapping[str, Any]) -> PlanDetails:
        """Derive plan type, VM count (clamped) and display name from a plan event."""
        metadata = event.get("metadata") or {}
        raw_type = metadata.get("planType") or event.get("planType") or event.get("plan_type")
        raw_count = metadata.get("vmCount", event.get("vmCount", event.get("vm_count")))
        plan_name = metadata.get("planName") or event.get("planName") or event.get("nickname") or "Custom Plan"
        plan_type = self.normalize(raw_type, plan_name)
        vm_count = min(max(_parse_count(raw_count), MIN_VMS), self.max_vms)
        return PlanDetails(
            plan_type=plan_type,
            vm_count=vm_count,
            plan_name=plan_name,
            config=self.config_for(plan_type),
        )
