"""Tests for per-key locking."""

import threading

from recipesync.sync import KeyedLock


class TestKeyedLock:
    """Tests for KeyedLock."""

    def test_entries_released(self):
        """Test lock entries disappear after the last holder leaves."""
        locks = KeyedLock()

        with locks.hold(("user-1", "Recipe", "r1")):
            assert len(locks) == 1

        assert len(locks) == 0

    def test_released_on_error(self):
        """Test an exception inside the block still releases the lock."""
        locks = KeyedLock()

        try:
            with locks.hold("key"):
                raise ValueError("boom")
        except ValueError:
            pass

        assert len(locks) == 0
        with locks.hold("key"):
            pass

    def test_same_key_excludes(self):
        """Test a second holder of the same key waits."""
        locks = KeyedLock()
        acquired = threading.Event()

        def contend():
            with locks.hold("key"):
                acquired.set()

        with locks.hold("key"):
            worker = threading.Thread(target=contend)
            worker.start()
            assert not acquired.wait(timeout=0.1)

        worker.join(timeout=2)
        assert acquired.is_set()

    def test_different_keys_independent(self):
        """Test holders of different keys do not wait on each other."""
        locks = KeyedLock()
        acquired = threading.Event()

        def other_key():
            with locks.hold("other"):
                acquired.set()

        with locks.hold("key"):
            worker = threading.Thread(target=other_key)
            worker.start()
            assert acquired.wait(timeout=2)

        worker.join(timeout=2)
