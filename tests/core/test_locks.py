import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from cargo_dispatch.core.locks import KeyedLock

STRESS_ITERATIONS = 200


@pytest.mark.unit
class TestKeyedLock:
    def test_reentrant_for_same_thread(self):
        locks = KeyedLock()

        with locks.hold("BK1"), locks.hold("BK1"):
            assert len(locks) == 1

    def test_lock_dropped_after_release(self):
        locks = KeyedLock()

        with locks.hold("BK1"):
            pass

        assert len(locks) == 0

    def test_serializes_same_key(self):
        locks = KeyedLock()
        counter = {"value": 0}

        def increment():
            with locks.hold("BK1"):
                current = counter["value"]
                time.sleep(0)
                counter["value"] = current + 1

        with ThreadPoolExecutor(max_workers=8) as executor:
            for _ in range(STRESS_ITERATIONS):
                executor.submit(increment)

        assert counter["value"] == STRESS_ITERATIONS
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        entered = threading.Event()

        def hold_other_key():
            with locks.hold("BK2"):
                entered.set()

        with locks.hold("BK1"):
            thread = threading.Thread(target=hold_other_key)
            thread.start()
            assert entered.wait(timeout=2.0)
            thread.join()
