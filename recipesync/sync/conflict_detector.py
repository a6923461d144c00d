"""Staleness check for incoming changes.

A device declares the version it built its change on. If the log has moved
past that version and the newest entry came from a different device, both
devices edited the same base without seeing each other: a conflict. If the
newest entry came from the same device it is a continuation (or a replay)
of that device's own work, not divergence.
"""

import logging
from dataclasses import dataclass

from ..models import ChangeEntry, PendingChange
from ..store import ChangeLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictOutcome:
    """Result of a conflict check.

    ``latest`` is the newest entry seen during the check (None for a new
    entity); the coordinator passes its version to the append as the
    expected current version.
    """

    conflict: bool
    latest: ChangeEntry | None = None

    @property
    def with_entry(self) -> ChangeEntry | None:
        """The already accepted entry the incoming change collides with."""
        return self.latest if self.conflict else None

    @property
    def current_version(self) -> int:
        return self.latest.version if self.latest else 0


class ConflictDetector:
    """Compares an incoming change with the change log."""

    def __init__(self, change_log: ChangeLog):
        self._log = change_log

    def check(
        self, incoming: PendingChange, known_base_version: int
    ) -> ConflictOutcome:
        """Decide whether an incoming change conflicts with the log.

        Args:
            incoming: The change being pushed.
            known_base_version: Last version of the entity the device saw.

        Returns:
            ConflictOutcome with ``conflict`` set when another device's
            change was accepted after the base version.
        """
        latest = self._log.get_latest_version(
            incoming.entity_type, incoming.entity_id, user_id=incoming.user_id
        )

        if latest is None or latest.version == known_base_version:
            return ConflictOutcome(conflict=False, latest=latest)

        if latest.origin_device_id == incoming.device_id:
            logger.debug(
                f"{incoming.entity_type}/{incoming.entity_id}: base v{known_base_version} "
                f"behind v{latest.version} from the same device, accepting"
            )
            return ConflictOutcome(conflict=False, latest=latest)

        logger.info(
            f"{incoming.entity_type}/{incoming.entity_id}: device {incoming.device_id} "
            f"pushed on v{known_base_version}, log is at v{latest.version} "
            f"from {latest.origin_device_id}"
        )
        return ConflictOutcome(conflict=True, latest=latest)
