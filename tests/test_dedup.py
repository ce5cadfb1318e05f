"""Tests for duplicate update suppression."""

from dedup import EventDeduplicator


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_dedup(ttl=60.0, max_size=100):
    clock = FakeClock()
    return EventDeduplicator(ttl=ttl, max_size=max_size, clock=clock), clock


def test_first_occurrence_processed_then_suppressed():
    dedup, _ = make_dedup()
    key = ("cb-1", "subscribe")

    assert dedup.should_process(key) is True
    assert dedup.should_process(key) is False
    assert dedup.should_process(key) is False


def test_rollback_allows_retry_once():
    dedup, _ = make_dedup()
    key = ("cb-1", "check_payment_42")
    dedup.should_process(key)

    dedup.rollback(key)

    assert dedup.should_process(key) is True
    assert dedup.should_process(key) is False


def test_rollback_of_unknown_key_is_noop():
    dedup, _ = make_dedup()

    dedup.rollback(("missing", 1))

    assert len(dedup) == 0


def test_keys_are_independent():
    dedup, _ = make_dedup()

    assert dedup.should_process((10, 42)) is True
    assert dedup.should_process((10, 43)) is True
    assert dedup.should_process((11, 42)) is True


def test_keys_expire_after_ttl():
    dedup, clock = make_dedup(ttl=60)
    dedup.should_process("a")

    clock.now += 59
    assert dedup.should_process("a") is False
    assert "a" in dedup

    clock.now += 2
    assert "a" not in dedup
    assert dedup.should_process("a") is True


def test_capacity_is_bounded():
    dedup, _ = make_dedup(max_size=3)

    for key in range(5):
        dedup.should_process(key)

    assert len(dedup) == 3
    # the oldest keys were dropped
    assert dedup.should_process(0) is True
    assert dedup.should_process(4) is False
