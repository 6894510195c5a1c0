import pytest

from pending_checkouts import PendingCheckoutTracker


class FakeClock:
    def __init__(self, now_ms=0):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms


def test_register_and_get():
    tracker = PendingCheckoutTracker(ttl_seconds=60, clock=FakeClock(1000))
    tracker.register("q1", 42, "package_mini")
    entry = tracker.get("q1")
    assert (entry.payer_id, entry.product_id, entry.observed_at_ms) == (42, "package_mini", 1000)
    assert "q1" in tracker and len(tracker) == 1


def test_entries_expire_after_ttl():
    clock = FakeClock()
    tracker = PendingCheckoutTracker(ttl_seconds=60, clock=clock)
    tracker.register("q1", 42, "package_mini")
    clock.now_ms = 59_999
    assert tracker.get("q1") is not None
    clock.now_ms = 60_000
    assert tracker.get("q1") is None
    assert len(tracker) == 0


def test_sweep_removes_only_expired():
    clock = FakeClock()
    tracker = PendingCheckoutTracker(ttl_seconds=10, clock=clock)
    tracker.register("old1", 1, "package_tiny")
    tracker.register("old2", 2, "package_tiny")
    clock.now_ms = 5_000
    tracker.register("fresh", 3, "package_tiny")
    clock.now_ms = 12_000
    assert tracker.sweep() == 2
    assert "fresh" in tracker and len(tracker) == 1
    assert tracker.sweep() == 0


def test_size_cap_drops_oldest():
    tracker = PendingCheckoutTracker(ttl_seconds=60, max_entries=2, clock=FakeClock())
    for query_id in ("q1", "q2", "q3"):
        tracker.register(query_id, 42, "package_mini")
    assert len(tracker) == 2
    assert "q1" not in tracker
    assert "q3" in tracker


@pytest.mark.parametrize("ttl,max_entries", [(0, 10), (10, 0), (-1, 10)])
def test_rejects_non_positive_limits(ttl, max_entries):
    with pytest.raises(ValueError):
        PendingCheckoutTracker(ttl_seconds=ttl, max_entries=max_entries)
