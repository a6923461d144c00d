"""Tests for conflict detection, storage and resolution policies."""

import uuid
from datetime import timedelta

import pytest

from recipesync.errors import InvalidResolution, NotFound
from recipesync.models import Conflict, ConflictStatus, Operation, PendingChange
from recipesync.store import ChangeLog, ConflictStore
from recipesync.sync import ConflictDetector, available_policies, create_policy


@pytest.fixture
def log(db, clock):
    return ChangeLog(db, clock=clock)


@pytest.fixture
def store(db, clock):
    return ConflictStore(db, clock=clock)


@pytest.fixture
def detector(log):
    return ConflictDetector(log)


def _pending(device_id, payload=None, clock=None):
    return PendingChange(
        user_id="user-1",
        device_id=device_id,
        entity_type="Recipe",
        entity_id="r1",
        operation=Operation.UPDATE,
        payload=payload or {"title": "Soup"},
        client_timestamp=clock() if clock else None,
    )


def _conflict(clock, device1="device-a", device2="device-b", gap_seconds=5):
    return Conflict(
        id=str(uuid.uuid4()),
        user_id="user-1",
        entity_type="Recipe",
        entity_id="r1",
        device1_id=device1,
        device2_id=device2,
        server_data={"title": "Base"},
        device1_data={"title": "From A"},
        device2_data={"title": "From B"},
        device1_timestamp=clock.now,
        device2_timestamp=clock.now + timedelta(seconds=gap_seconds),
        base_version=1,
        server_version=2,
    )


class TestConflictDetector:
    """Tests for ConflictDetector."""

    def test_new_entity(self, detector, clock):
        """Test a change to an unseen entity never conflicts."""
        outcome = detector.check(_pending("device-a", clock=clock), known_base_version=0)

        assert outcome.conflict is False
        assert outcome.latest is None
        assert outcome.current_version == 0

    def test_up_to_date_base(self, detector, log, clock):
        """Test a change based on the latest version does not conflict."""
        log.append("user-1", "device-b", "Recipe", "r1", Operation.CREATE, {}, clock())

        outcome = detector.check(_pending("device-a", clock=clock), known_base_version=1)

        assert outcome.conflict is False
        assert outcome.current_version == 1

    def test_stale_base_other_device(self, detector, log, clock):
        """Test a stale base conflicts when another device moved the entity."""
        log.append("user-1", "device-a", "Recipe", "r1", Operation.CREATE, {}, clock())
        latest = log.append("user-1", "device-a", "Recipe", "r1", Operation.UPDATE, {}, clock())

        outcome = detector.check(_pending("device-b", clock=clock), known_base_version=1)

        assert outcome.conflict is True
        assert outcome.with_entry.id == latest.id

    def test_stale_base_same_device(self, detector, log, clock):
        """Test a device continuing its own work is not a conflict."""
        log.append("user-1", "device-a", "Recipe", "r1", Operation.CREATE, {}, clock())
        log.append("user-1", "device-a", "Recipe", "r1", Operation.UPDATE, {}, clock())

        outcome = detector.check(_pending("device-a", clock=clock), known_base_version=1)

        assert outcome.conflict is False
        assert outcome.with_entry is None
        assert outcome.current_version == 2


class TestConflictStore:
    """Tests for ConflictStore."""

    def test_record_and_get(self, store, clock):
        """Test recording a conflict fills detected_at and round-trips data."""
        conflict = store.record(_conflict(clock))

        assert conflict.detected_at == clock.now

        stored = store.get(conflict.id)
        assert stored.status == ConflictStatus.UNRESOLVED
        assert stored.device1_data == {"title": "From A"}
        assert stored.device2_data == {"title": "From B"}
        assert stored.server_data == {"title": "Base"}
        assert stored.base_version == 1
        assert stored.server_version == 2

    def test_list_unresolved(self, store, clock):
        """Test listing and counting unresolved conflicts."""
        first = store.record(_conflict(clock))
        clock.advance(1)
        second = store.record(_conflict(clock))

        assert [c.id for c in store.list_unresolved("user-1")] == [first.id, second.id]
        assert store.count_unresolved("user-1") == 2
        assert store.list_unresolved("user-2") == []

    def test_resolve_once(self, store, clock):
        """Test a conflict can be resolved exactly once."""
        conflict = store.record(_conflict(clock))
        clock.advance(10)

        resolved = store.resolve(conflict.id, "manual", {"title": "Merged"}, "user-1")

        assert resolved.is_resolved
        assert resolved.resolution == "manual"
        assert resolved.resolved_data == {"title": "Merged"}
        assert resolved.resolved_at == clock.now
        assert resolved.resolved_by == "user-1"
        assert store.count_unresolved("user-1") == 0

        with pytest.raises(NotFound) as exc_info:
            store.resolve(conflict.id, "manual", {"title": "Again"}, "user-1")
        assert exc_info.value.reason == "already resolved"

    def test_resolve_unknown(self, store):
        """Test resolving an unknown conflict."""
        with pytest.raises(NotFound) as exc_info:
            store.resolve("missing", "keep_server", None, "user-1")
        assert exc_info.value.reason is None

    def test_list_for_entity(self, store, clock):
        """Test resolved conflicts stay visible per entity."""
        conflict = store.record(_conflict(clock))
        store.resolve(conflict.id, "keep_server", {"title": "From A"}, "user-1")

        history = store.list_for_entity("Recipe", "r1")
        assert [c.id for c in history] == [conflict.id]
        assert history[0].status == ConflictStatus.RESOLVED


class TestResolutionPolicies:
    """Tests for resolution policies."""

    def test_available(self):
        """Test the policy names."""
        assert available_policies() == [
            "keep_device",
            "keep_server",
            "last_write_wins",
            "manual",
        ]

    def test_last_write_wins_later_device(self, clock):
        """Test the later timestamp wins."""
        policy = create_policy("last_write_wins")

        assert policy.resolve(_conflict(clock, gap_seconds=5)) == {"title": "From B"}
        assert policy.resolve(_conflict(clock, gap_seconds=-5)) == {"title": "From A"}

    def test_last_write_wins_tie(self, clock):
        """Test ties go to the lower device id."""
        policy = create_policy("last_write_wins")

        tie_a_lower = _conflict(clock, device1="aaa", device2="bbb", gap_seconds=0)
        tie_b_lower = _conflict(clock, device1="bbb", device2="aaa", gap_seconds=0)

        assert policy.resolve(tie_a_lower) == {"title": "From A"}
        assert policy.resolve(tie_b_lower) == {"title": "From B"}

    def test_keep_server_and_device(self, clock):
        """Test the fixed-side policies."""
        conflict = _conflict(clock)

        assert create_policy("keep_server").resolve(conflict) == {"title": "From A"}
        assert create_policy("keep_device").resolve(conflict) == {"title": "From B"}

    def test_manual(self, clock):
        """Test manual resolution uses the supplied data."""
        policy = create_policy("manual")
        conflict = _conflict(clock)

        assert policy.resolve(conflict, {"title": "Merged"}) == {"title": "Merged"}
        with pytest.raises(InvalidResolution):
            policy.resolve(conflict)

    def test_unknown_policy(self):
        """Test unknown policy names are rejected."""
        with pytest.raises(InvalidResolution):
            create_policy("first_write_wins")
