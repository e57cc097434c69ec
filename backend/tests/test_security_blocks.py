from genmeter.services.security_blocks import SecurityBlockTracker


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _tracker(clock=None, threshold=3, window=3600):
    return SecurityBlockTracker(window_seconds=window, warning_threshold=threshold, clock=clock or _Clock())


def test_warns_once_at_threshold_then_deducts():
    tracker = _tracker()

    first = tracker.record_security_block("u1")
    second = tracker.record_security_block("u1")
    assert not first.should_warn and not first.should_deduct
    assert not second.should_warn and not second.should_deduct

    third = tracker.record_security_block("u1")
    assert third.should_warn is True
    assert third.should_deduct is False
    assert tracker.is_warned("u1")

    fourth = tracker.record_security_block("u1")
    fifth = tracker.record_security_block("u1")
    assert fourth.should_deduct and not fourth.should_warn
    assert fifth.should_deduct


def test_old_blocks_fall_out_of_the_window():
    clock = _Clock()
    tracker = _tracker(clock=clock, window=60)

    tracker.record_security_block("u1")
    tracker.record_security_block("u1")
    clock.now = 120
    result = tracker.record_security_block("u1")

    assert result.block_count == 1
    assert not result.should_warn


def test_warning_latch_survives_window_expiry():
    clock = _Clock()
    tracker = _tracker(clock=clock, window=60, threshold=2)

    tracker.record_security_block("u1")
    assert tracker.record_security_block("u1").should_warn

    clock.now = 10_000
    assert tracker.record_security_block("u1").should_deduct


def test_admins_and_blank_ids_are_never_tracked():
    tracker = _tracker(threshold=1)

    for _ in range(5):
        result = tracker.record_security_block("admin-1", is_admin=True)
        assert not result.should_warn and not result.should_deduct
    assert tracker.block_count("admin-1") == 0
    assert not tracker.is_warned("admin-1")

    assert tracker.record_security_block("").block_count == 0
