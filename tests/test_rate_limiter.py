import pytest

from adintel.services.rate_limiter import (
    FALLBACK_LIMITS,
    REASON_RPD,
    REASON_RPM,
    REASON_TPM,
    CallSpec,
    RateLimiter,
    RateLimits,
)
from tests.conftest import FakeClock


def _limiter(clock: FakeClock, **limits: RateLimits) -> RateLimiter:
    return RateLimiter({("openai", name): value for name, value in limits.items()}, clock=clock)


def test_rpm_blocks_fourth_request_and_reports_wait() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=3, tpm=40_000, rpd=200))

    for at in (0.0, 10.0, 20.0):
        clock.now = at
        limiter.record("openai", "mini", 100)

    clock.now = 30.0
    decision = limiter.can_proceed("openai", "mini", 100)
    assert not decision.allowed
    assert decision.reason == REASON_RPM
    assert decision.wait_seconds == pytest.approx(30.0)
    assert decision.wait_millis == 30_000

    clock.now = 60.0
    assert limiter.can_proceed("openai", "mini", 100).allowed


def test_minute_window_counts_only_recent_requests() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=100, tpm=1_000_000, rpd=1_000))
    timestamps = [0.0, 5.0, 30.0, 59.0, 61.0, 90.0]
    for at in timestamps:
        clock.now = at
        limiter.record("openai", "mini", 10)

    clock.now = 100.0
    stats = limiter.usage_stats("openai", "mini")
    recent = [t for t in timestamps if 100.0 - t < 60.0]
    assert stats["rpm"] == len(recent)
    assert stats["tpm"] == 10 * len(recent)
    assert stats["rpd"] == len(timestamps)
    assert stats["seconds_since_last_request"] == pytest.approx(10.0)


@pytest.mark.parametrize("step", [1.0, 7.0, 13.5])
def test_granted_requests_never_exceed_rpm_in_any_minute(step) -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=3, tpm=40_000, rpd=1_000))
    granted = []
    while clock.now < 600.0:
        if limiter.acquire("openai", "mini", 100).allowed:
            granted.append(clock.now)
        clock.now += step

    assert len(granted) > 3
    for at in granted:
        in_window = [t for t in granted if 0.0 <= at - t < 60.0]
        assert len(in_window) <= 3


def test_tpm_blocks_until_enough_tokens_expire() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=100, tpm=1_000, rpd=1_000))
    limiter.record("openai", "mini", 600)
    clock.now = 10.0
    limiter.record("openai", "mini", 300)

    clock.now = 20.0
    decision = limiter.can_proceed("openai", "mini", 200)
    assert not decision.allowed
    assert decision.reason == REASON_TPM
    assert decision.wait_seconds == pytest.approx(40.0)
    assert limiter.can_proceed("openai", "mini", 100).allowed


def test_rpd_blocks_for_rest_of_day() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=100, tpm=1_000_000, rpd=2))
    limiter.record("openai", "mini", 1)
    clock.now = 120.0
    limiter.record("openai", "mini", 1)

    clock.now = 200.0
    decision = limiter.can_proceed("openai", "mini", 1)
    assert not decision.allowed
    assert decision.reason == REASON_RPD
    assert decision.wait_seconds == pytest.approx(86_400.0 - 200.0)


def test_acquire_records_estimate_and_settle_replaces_it() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=3, tpm=40_000, rpd=200))

    decision = limiter.acquire("openai", "mini", 1_000)
    assert decision.allowed
    assert decision.ticket is not None
    assert limiter.usage_stats("openai", "mini")["tpm"] == 1_000

    limiter.settle(decision.ticket, 250)
    assert decision.ticket.tokens == 250
    assert limiter.usage_stats("openai", "mini")["tpm"] == 250


def test_acquire_does_not_record_when_blocked() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=1, tpm=40_000, rpd=200))
    assert limiter.acquire("openai", "mini", 10).allowed

    blocked = limiter.acquire("openai", "mini", 10)
    assert not blocked.allowed
    assert blocked.ticket is None
    assert limiter.usage_stats("openai", "mini")["rpm"] == 1


def test_can_proceed_all_requires_every_call_and_records_nothing() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(
        clock,
        vision=RateLimits(rpm=1, tpm=40_000, rpd=200),
        mini=RateLimits(rpm=3, tpm=40_000, rpd=200),
    )
    limiter.record("openai", "vision", 10)

    decision = limiter.can_proceed_all([CallSpec("openai", "vision", 10), CallSpec("openai", "mini", 10)])

    assert not decision.allowed
    assert decision.model == "vision"
    assert limiter.usage_stats("openai", "mini")["rpm"] == 0


def test_can_proceed_all_counts_repeated_model_calls_together() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=3, tpm=40_000, rpd=200))
    limiter.record("openai", "mini", 10)
    limiter.record("openai", "mini", 10)

    decision = limiter.can_proceed_all([CallSpec("openai", "mini", 10), CallSpec("openai", "mini", 10)])
    assert not decision.allowed
    assert decision.reason == REASON_RPM


def test_can_proceed_all_waits_until_enough_slots_free_for_every_call() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=3, tpm=40_000, rpd=200))
    for at in (0.0, 10.0):
        clock.now = at
        limiter.record("openai", "mini", 10)
    calls = [CallSpec("openai", "mini", 10)] * 3

    clock.now = 20.0
    decision = limiter.can_proceed_all(calls)
    assert not decision.allowed
    assert decision.reason == REASON_RPM
    # Three calls need both recorded requests gone, so the one at t=10 decides.
    assert decision.wait_seconds == pytest.approx(50.0)

    clock.now = 69.0
    assert not limiter.can_proceed_all(calls).allowed
    clock.now = 70.0
    assert limiter.can_proceed_all(calls).allowed


def test_unknown_model_uses_most_conservative_profile() -> None:
    limiter = RateLimiter({}, clock=FakeClock())
    assert limiter.limits_for("openai", "brand-new-model") == FALLBACK_LIMITS


def test_status_and_reset() -> None:
    clock = FakeClock(start=0.0)
    limiter = _limiter(clock, mini=RateLimits(rpm=3, tpm=40_000, rpd=200))
    limiter.record("openai", "mini", 42)

    status = limiter.status()
    assert status["openai:mini"]["rpm"] == 1
    assert status["openai:mini"]["limits"] == {"rpm": 3, "tpm": 40_000, "rpd": 200}

    limiter.reset()
    assert limiter.usage_stats("openai", "mini")["rpm"] == 0
