# Hypervisor control-plane client
from .client import HypervisorClient
from .errors import (
    AuthError,
    HypervisorError,
    ResourceExhausted,
    TaskCancelled,
    TaskFailedError,
    TaskTimeoutError,
    TransportError,
    VMOperationError,
)
from .session import HypervisorSession, SessionState
from .tasks import TaskHandle, TaskWaiter

__all__ = [
    "HypervisorClient",
    "HypervisorSession",
    "SessionState",
    "TaskHandle",
    "TaskWaiter",
    "HypervisorError",
    "AuthError",
    "VMOperationError",
    "TransportError",
    "TaskFailedError",
    "TaskTimeoutError",
    "TaskCancelled",
    "ResourceExhausted",
]
