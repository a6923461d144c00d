"""Sync engine: conflict detection, resolution, fan-out and notification."""

from .conflict_detector import ConflictDetector, ConflictOutcome
from .coordinator import SERVER_ORIGIN, SessionState, SyncCoordinator
from .locks import KeyedLock
from .notifier import MQTTNotifier, Notifier, NullNotifier, create_notifier
from .resolution import available_policies, create_policy

__all__ = [
    "ConflictDetector",
    "ConflictOutcome",
    "KeyedLock",
    "MQTTNotifier",
    "Notifier",
    "NullNotifier",
    "SERVER_ORIGIN",
    "SessionState",
    "SyncCoordinator",
    "available_policies",
    "create_policy",
    "create_notifier",
]
