from .manager import ProvisioningJournal, ProvisioningStateStore, StateTransitionError, VALID_TRANSITIONS

__all__ = ["ProvisioningStateStore", "ProvisioningJournal", "StateTransitionError", "VALID_TRANSITIONS"]
