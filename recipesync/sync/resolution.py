"""Conflict resolution policies.

Every policy is a pure function of the recorded conflict (and, for manual
resolution, the data the user chose), so re-running a resolution yields the
same answer:

- ``LastWriteWinsPolicy``: the later server timestamp wins.
- ``KeepServerPolicy``: the change already in the log wins.
- ``KeepDevicePolicy``: the rejected device change wins.
- ``ManualPolicy``: caller-supplied data.

``create_policy()`` maps policy names to instances.
"""

import logging
from typing import Any, Protocol

from ..errors import InvalidResolution
from ..models import Conflict

logger = logging.getLogger(__name__)

LAST_WRITE_WINS = "last_write_wins"
KEEP_SERVER = "keep_server"
KEEP_DEVICE = "keep_device"
MANUAL = "manual"


class ResolutionPolicy(Protocol):
    """Protocol that all resolution policies satisfy."""

    name: str

    def resolve(self, conflict: Conflict, proposed_data: Any = None) -> Any:
        """Return the data the entity should end up with."""
        ...  # pragma: no cover


class LastWriteWinsPolicy:
    """Pick the payload with the later server timestamp.

    Both timestamps come from the coordinator's clock, never from a device.
    Ties go to the lower device id, then to the change already in the log.
    """

    name = LAST_WRITE_WINS

    def resolve(self, conflict: Conflict, proposed_data: Any = None) -> Any:
        if conflict.device2_timestamp > conflict.device1_timestamp:
            return conflict.device2_data
        if conflict.device2_timestamp < conflict.device1_timestamp:
            return conflict.device1_data
        if conflict.device2_id < conflict.device1_id:
            return conflict.device2_data
        return conflict.device1_data


class KeepServerPolicy:
    name = KEEP_SERVER

    def resolve(self, conflict: Conflict, proposed_data: Any = None) -> Any:
        return conflict.device1_data


class KeepDevicePolicy:
    name = KEEP_DEVICE

    def resolve(self, conflict: Conflict, proposed_data: Any = None) -> Any:
        return conflict.device2_data


class ManualPolicy:
    """Use whatever the user merged by hand."""

    name = MANUAL

    def resolve(self, conflict: Conflict, proposed_data: Any = None) -> Any:
        if proposed_data is None:
            raise InvalidResolution(
                f"Manual resolution of conflict {conflict.id} requires resolved data"
            )
        return proposed_data


_POLICIES: dict[str, type] = {
    LAST_WRITE_WINS: LastWriteWinsPolicy,
    KEEP_SERVER: KeepServerPolicy,
    KEEP_DEVICE: KeepDevicePolicy,
    MANUAL: ManualPolicy,
}


def available_policies() -> list[str]:
    return sorted(_POLICIES)


def create_policy(name: str) -> ResolutionPolicy:
    """Create a resolution policy by name.

    Args:
        name: One of ``last_write_wins``, ``keep_server``, ``keep_device``,
            ``manual``.

    Raises:
        InvalidResolution: Unknown policy name.
    """
    try:
        policy_cls = _POLICIES[name]
    except KeyError:
        raise InvalidResolution(
            f"Unknown resolution policy '{name}', expected one of {available_policies()}"
        ) from None
    return policy_cls()
