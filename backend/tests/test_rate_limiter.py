from genmeter.services.rate_limiter import NoopRateLimiter, SlidingWindowRateLimiter, build_rate_limiter


class _Clock:
    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _admit(limiter, identifier="u1", limit=3, window=60):
    result = limiter.check(identifier=identifier, limit=limit, window_seconds=window)
    if result.allowed:
        limiter.record(identifier=identifier)
    return result


def test_sliding_window_blocks_after_limit_and_reopens():
    clock = _Clock(1_000.0)
    limiter = SlidingWindowRateLimiter(clock=clock)

    for _ in range(3):
        assert _admit(limiter).allowed

    clock.now += 20
    blocked = _admit(limiter)
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 40
    assert blocked.message == "Too many requests, please try again in 40 seconds"

    clock.now += 40
    reopened = _admit(limiter)
    assert reopened.allowed is True


def test_windows_are_tracked_per_identifier():
    clock = _Clock(0.0)
    limiter = SlidingWindowRateLimiter(clock=clock)

    for _ in range(3):
        _admit(limiter, identifier="a")

    assert _admit(limiter, identifier="a").allowed is False
    assert _admit(limiter, identifier="b").allowed is True


def test_check_without_record_does_not_consume_capacity():
    limiter = SlidingWindowRateLimiter(clock=_Clock(10.0))

    for _ in range(10):
        result = limiter.check(identifier="u1", limit=1, window_seconds=60)
        assert result.allowed
        assert result.count == 0


def test_non_positive_limit_disables_the_window():
    limiter = SlidingWindowRateLimiter(clock=_Clock(10.0))
    for _ in range(5):
        assert _admit(limiter, limit=0).allowed


def test_noop_limiter_always_allows():
    limiter = NoopRateLimiter()
    for _ in range(100):
        result = limiter.check(identifier="u1", limit=1, window_seconds=60)
        limiter.record(identifier="u1")
        assert result.allowed
        assert result.message is None


def test_build_rate_limiter_honours_flag():
    assert isinstance(build_rate_limiter(enabled=False), NoopRateLimiter)
    assert isinstance(build_rate_limiter(enabled=True), SlidingWindowRateLimiter)
