"""Tests for the per-device delivery queue."""

import pytest
from datetime import timedelta

from recipesync.errors import DeliveryExhausted, NotFound
from recipesync.models import Operation, QueueStatus
from recipesync.store import ChangeLog, DeviceRegistry, SyncQueue


@pytest.fixture
def log(db, clock):
    return ChangeLog(db, clock=clock)


@pytest.fixture
def devices(db, clock):
    return DeviceRegistry(db, clock=clock)


@pytest.fixture
def queue(db, clock):
    return SyncQueue(
        db,
        max_retries=3,
        backoff_seconds=5.0,
        max_backoff_seconds=60.0,
        clock=clock,
    )


@pytest.fixture
def tablet(devices):
    return devices.register("user-1", "Kitchen tablet", "tablet", "17.2", "3.1.0")


@pytest.fixture
def phone(devices):
    return devices.register("user-1", "Phone", "phone", "14", "3.1.0")


def _change(log, entity_id="r1", operation=Operation.UPDATE, device="laptop"):
    return log.append(
        "user-1", device, "Recipe", entity_id, operation, {"id": entity_id}, log._clock()
    )


class TestEnqueue:
    """Tests for fan-out."""

    def test_one_item_per_target(self, log, queue, tablet, phone):
        """Test enqueue creates an item for each target device."""
        change = _change(log)

        items = queue.enqueue(change, [tablet.id, phone.id])

        assert {i.target_device_id for i in items} == {tablet.id, phone.id}
        for item in items:
            assert item.change_id == change.id
            assert item.version == change.version
            assert item.status == QueueStatus.QUEUED
            assert item.retry_count == 0
            assert item.priority == Operation.UPDATE.priority

    def test_enqueue_is_idempotent(self, log, queue, tablet):
        """Test re-enqueueing a change for the same device adds nothing."""
        change = _change(log)
        queue.enqueue(change, [tablet.id])

        again = queue.enqueue(change, [tablet.id, tablet.id])

        assert again == []
        assert len(queue.list_items("user-1")) == 1

    def test_priority_mapping(self):
        """Test destructive operations get higher priority."""
        assert Operation.DELETE.priority > Operation.UPDATE.priority
        assert Operation.UPDATE.priority > Operation.CREATE.priority


class TestDrain:
    """Tests for SyncQueue.drain."""

    def test_priority_order(self, log, queue, tablet):
        """Test deletes drain before updates before creates."""
        queue.enqueue(_change(log, "r1", Operation.CREATE), [tablet.id])
        queue.enqueue(_change(log, "r2", Operation.UPDATE), [tablet.id])
        queue.enqueue(_change(log, "r3", Operation.DELETE), [tablet.id])

        items = queue.drain("user-1", tablet.id)

        assert [i.operation for i in items] == [
            Operation.DELETE,
            Operation.UPDATE,
            Operation.CREATE,
        ]

    def test_fifo_within_priority(self, log, queue, tablet, clock):
        """Test items of equal priority drain in queue order."""
        for entity_id in ("r1", "r2", "r3"):
            queue.enqueue(_change(log, entity_id), [tablet.id])
            clock.advance(1)

        items = queue.drain("user-1", tablet.id)

        assert [i.entity_id for i in items] == ["r1", "r2", "r3"]

    def test_versions_in_order(self, log, queue, tablet):
        """Test versions of one entity drain in ascending order."""
        for _ in range(3):
            queue.enqueue(_change(log, "r1"), [tablet.id])

        items = queue.drain("user-1", tablet.id)

        assert [i.version for i in items] == [1, 2, 3]

    def test_limit(self, log, queue, tablet):
        """Test drain honors the limit."""
        for entity_id in ("r1", "r2", "r3"):
            queue.enqueue(_change(log, entity_id), [tablet.id])

        assert len(queue.drain("user-1", tablet.id, limit=2)) == 2

    def test_drain_is_read_only(self, log, queue, tablet):
        """Test draining twice returns the same items."""
        queue.enqueue(_change(log), [tablet.id])

        first = queue.drain("user-1", tablet.id)
        second = queue.drain("user-1", tablet.id)

        assert [i.id for i in first] == [i.id for i in second]
        assert second[0].status == QueueStatus.QUEUED

    def test_only_target_device(self, log, queue, tablet, phone):
        """Test a device only sees its own items."""
        queue.enqueue(_change(log), [tablet.id])

        assert queue.drain("user-1", phone.id) == []

    def test_inactive_device_drains_nothing(self, log, queue, devices, tablet):
        """Test items stay stored but are not drained after unregistering."""
        queue.enqueue(_change(log), [tablet.id])
        devices.unregister(tablet.id)

        assert queue.drain("user-1", tablet.id) == []
        stored = queue.list_items("user-1", tablet.id)
        assert len(stored) == 1
        assert stored[0].status == QueueStatus.QUEUED


class TestAcknowledge:
    """Tests for SyncQueue.acknowledge."""

    def test_acknowledge(self, log, queue, tablet, clock):
        """Test acknowledging marks the item delivered."""
        item = queue.enqueue(_change(log), [tablet.id])[0]

        acked = queue.acknowledge(item.id)

        assert acked.status == QueueStatus.DELIVERED
        assert acked.delivered_at == clock.now
        assert queue.drain("user-1", tablet.id) == []

    def test_acknowledge_twice(self, log, queue, tablet, clock):
        """Test a second acknowledge is a no-op."""
        item = queue.enqueue(_change(log), [tablet.id])[0]
        first = queue.acknowledge(item.id)
        clock.advance(30)

        second = queue.acknowledge(item.id)

        assert second.status == QueueStatus.DELIVERED
        assert second.delivered_at == first.delivered_at

    def test_acknowledge_unknown(self, queue):
        """Test acknowledging an unknown item raises NotFound."""
        with pytest.raises(NotFound):
            queue.acknowledge("missing")


class TestFailures:
    """Tests for failure reporting and backoff."""

    def test_backoff_delay(self, queue):
        """Test backoff doubles per failure and is capped."""
        assert queue.backoff_delay(0) == 0.0
        assert queue.backoff_delay(1) == 5.0
        assert queue.backoff_delay(2) == 10.0
        assert queue.backoff_delay(3) == 20.0
        assert queue.backoff_delay(10) == 60.0

    def test_failure_schedules_retry(self, log, queue, tablet, clock):
        """Test a failed item is withheld until its backoff elapses."""
        item = queue.enqueue(_change(log), [tablet.id])[0]

        failed = queue.report_failure(item.id, "parse error")

        assert failed.status == QueueStatus.QUEUED
        assert failed.retry_count == 1
        assert failed.error_message == "parse error"
        assert failed.next_attempt_at == clock.now + timedelta(seconds=5)
        assert queue.drain("user-1", tablet.id) == []

        clock.advance(5)
        assert [i.id for i in queue.drain("user-1", tablet.id)] == [item.id]

    def test_retry_budget_exhausted(self, log, queue, tablet, clock):
        """Test an item is parked once it fails more than max_retries times."""
        item = queue.enqueue(_change(log), [tablet.id])[0]

        for _ in range(queue.max_retries):
            result = queue.report_failure(item.id, "still broken")
            assert result.status == QueueStatus.QUEUED
            clock.advance(120)

        parked = queue.report_failure(item.id, "gave up")

        assert parked.status == QueueStatus.FAILED
        assert parked.retry_count == queue.max_retries + 1
        assert queue.drain("user-1", tablet.id) == []
        assert [i.id for i in queue.list_failed("user-1")] == [item.id]

        with pytest.raises(DeliveryExhausted):
            queue.report_failure(item.id, "again")

    def test_failure_after_delivery_ignored(self, log, queue, tablet):
        """Test a late failure report does not undo an acknowledgement."""
        item = queue.enqueue(_change(log), [tablet.id])[0]
        queue.acknowledge(item.id)

        result = queue.report_failure(item.id, "late")

        assert result.status == QueueStatus.DELIVERED
        assert result.retry_count == 0

    def test_failure_unknown(self, queue):
        """Test reporting on an unknown item raises NotFound."""
        with pytest.raises(NotFound):
            queue.report_failure("missing", "error")


class TestRecovery:
    """Tests for operator recovery and housekeeping."""

    def _park(self, queue, item_id, clock):
        for _ in range(queue.max_retries + 1):
            queue.report_failure(item_id, "broken")
            clock.advance(120)

    def test_requeue(self, log, queue, tablet, clock):
        """Test requeue gives a parked item a fresh budget."""
        item = queue.enqueue(_change(log), [tablet.id])[0]
        self._park(queue, item.id, clock)

        requeued = queue.requeue(item.id)

        assert requeued.status == QueueStatus.QUEUED
        assert requeued.retry_count == 0
        assert requeued.error_message is None
        assert [i.id for i in queue.drain("user-1", tablet.id)] == [item.id]

    def test_requeue_non_failed_unchanged(self, log, queue, tablet):
        """Test requeue leaves a healthy item alone."""
        item = queue.enqueue(_change(log), [tablet.id])[0]

        assert queue.requeue(item.id).status == QueueStatus.QUEUED

    def test_remove(self, log, queue, tablet):
        """Test removing an item."""
        item = queue.enqueue(_change(log), [tablet.id])[0]

        queue.remove(item.id)

        assert queue.get(item.id) is None
        with pytest.raises(NotFound):
            queue.remove(item.id)

    def test_purge_delivered(self, log, queue, tablet, clock):
        """Test only old delivered items are purged."""
        old = queue.enqueue(_change(log, "r1"), [tablet.id])[0]
        pending = queue.enqueue(_change(log, "r2"), [tablet.id])[0]
        queue.acknowledge(old.id)

        assert queue.purge_delivered(older_than_days=30) == 0

        clock.advance(31 * 24 * 3600)
        assert queue.purge_delivered(older_than_days=30) == 1
        assert queue.get(old.id) is None
        assert queue.get(pending.id) is not None

    def test_purge_unregistered(self, log, queue, devices, tablet, phone, clock):
        """Test only old undelivered items of unregistered devices are purged."""
        items = queue.enqueue(_change(log), [tablet.id, phone.id])
        devices.unregister(tablet.id)

        assert queue.purge_unregistered(older_than_days=30) == 0

        clock.advance(31 * 24 * 3600)
        assert queue.purge_unregistered(older_than_days=30) == 1
        by_target = {i.target_device_id: i.id for i in items}
        assert queue.get(by_target[tablet.id]) is None
        assert queue.get(by_target[phone.id]) is not None

    def test_counters(self, log, queue, tablet, phone):
        """Test pending and per-status counts."""
        change = _change(log)
        items = queue.enqueue(change, [tablet.id, phone.id])

        assert queue.pending_count_for_change(change.id) == 2
        queue.acknowledge(items[0].id)
        assert queue.pending_count_for_change(change.id) == 1

        counts = queue.count_by_status("user-1")
        assert counts[QueueStatus.QUEUED] == 1
        assert counts[QueueStatus.DELIVERED] == 1
        assert counts[QueueStatus.FAILED] == 0
