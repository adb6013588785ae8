from __future__ import annotations

import threading
import time

from runic_market.locks import KeyedLocks


def test_lock_is_dropped_after_last_holder() -> None:
    locks = KeyedLocks("tasks")
    with locks.hold("T1"):
        with locks.hold("T1"):
            assert len(locks) == 1
        assert len(locks) == 1
    assert len(locks) == 0


def test_lock_is_dropped_even_when_body_raises() -> None:
    locks = KeyedLocks()
    try:
        with locks.hold("T1"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert len(locks) == 0


def test_waiter_keeps_the_same_lock_alive() -> None:
    locks = KeyedLocks()
    inside: list[str] = []
    entered = threading.Event()

    def worker() -> None:
        entered.set()
        with locks.hold("T1"):
            inside.append("worker")

    with locks.hold("T1"):
        t = threading.Thread(target=worker)
        t.start()
        entered.wait(timeout=5.0)
        deadline = time.monotonic() + 5.0
        # The waiter has registered once the count shows two holders.
        while locks._locks["T1"].holders < 2:
            assert time.monotonic() < deadline, "worker never queued for the lock"
            time.sleep(0.001)
        inside.append("main")

    t.join(timeout=5.0)
    assert inside == ["main", "worker"]
    assert len(locks) == 0


def test_many_threads_one_key_serialize() -> None:
    locks = KeyedLocks()
    n = 16
    barrier = threading.Barrier(n)
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal active, peak
        barrier.wait()
        with locks.hold("shared"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.001)
            with guard:
                active -= 1

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5.0)

    assert peak == 1
    assert len(locks) == 0
