"""
Unit tests for the per-key lock table.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.ml.serving.keyed_lock import KeyedLockTable


class TestKeyedLockTable:

    def test_entries_are_released(self):
        locks = KeyedLockTable()

        with locks.hold("user-1"):
            assert len(locks) == 1

        assert len(locks) == 0

    def test_entry_released_when_body_raises(self):
        locks = KeyedLockTable()

        with pytest.raises(RuntimeError):
            with locks.hold(1):
                raise RuntimeError("boom")

        assert len(locks) == 0
        with locks.hold(1):
            pass

    def test_same_key_is_exclusive(self):
        locks = KeyedLockTable()
        active = []
        overlaps = []
        guard = threading.Lock()

        def worker(_):
            with locks.hold(7):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(1)
                time.sleep(0.001)
                with guard:
                    active.pop()

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(worker, range(50)))

        assert overlaps == []
        assert len(locks) == 0

    def test_distinct_keys_do_not_block(self):
        locks = KeyedLockTable()
        acquired = threading.Event()

        with locks.hold("a"):
            def take_b():
                with locks.hold("b"):
                    acquired.set()

            thread = threading.Thread(target=take_b)
            thread.start()
            assert acquired.wait(timeout=5)
            thread.join(timeout=5)
