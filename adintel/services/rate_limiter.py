"""
Sliding-window rate limiting for AI provider calls.

Each (provider, model) pair has three independent ceilings: requests per
minute (RPM), tokens per minute (TPM) and requests per day (RPD). Windows are
kept in memory and rebuilt empty on restart; the limits are conservative
free-tier values, not the vendor's exact enforcement.

All state lives behind RateLimiter so a shared backing store can replace the
in-memory windows without touching callers.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from adintel.config import settings

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 24 * 60 * 60.0

REASON_RPM = "RPM"
REASON_TPM = "TPM"
REASON_RPD = "RPD"

PROVIDER_OPENAI = "openai"
PROVIDER_GEMINI = "gemini"


@dataclass(frozen=True)
class RateLimits:
    rpm: int
    tpm: int
    rpd: int


DEFAULT_LIMITS: Dict[Tuple[str, str], RateLimits] = {
    (PROVIDER_OPENAI, "gpt-4o"): RateLimits(rpm=3, tpm=40_000, rpd=200),
    (PROVIDER_OPENAI, "gpt-4o-mini"): RateLimits(rpm=3, tpm=40_000, rpd=200),
    (PROVIDER_GEMINI, "gemini-2.5-flash"): RateLimits(rpm=15, tpm=1_000_000, rpd=1500),
}
# Models without a configured profile get the tightest known limits.
FALLBACK_LIMITS = RateLimits(rpm=3, tpm=40_000, rpd=200)


@dataclass
class RateDecision:
    allowed: bool
    reason: Optional[str] = None
    wait_seconds: float = 0.0
    provider: Optional[str] = None
    model: Optional[str] = None
    ticket: Optional["RateTicket"] = None

    @property
    def wait_millis(self) -> int:
        return int(round(self.wait_seconds * 1000))


@dataclass
class RateTicket:
    """Handle to one recorded call, used to replace the token estimate with real usage."""

    provider: str
    model: str
    recorded_at: float
    _token_entry: List[Any] = field(repr=False)

    @property
    def tokens(self) -> int:
        return int(self._token_entry[1])


@dataclass(frozen=True)
class CallSpec:
    provider: str
    model: str
    estimated_tokens: int


class _Window:
    def __init__(self) -> None:
        self.minute: Deque[float] = deque()
        self.day: Deque[float] = deque()
        # [timestamp, tokens] pairs; lists so a settle can adjust the count in place.
        self.tokens: Deque[List[Any]] = deque()
        self.last_request_at: Optional[float] = None

    def purge(self, now: float) -> None:
        while self.minute and now - self.minute[0] >= MINUTE_SECONDS:
            self.minute.popleft()
        while self.tokens and now - self.tokens[0][0] >= MINUTE_SECONDS:
            self.tokens.popleft()
        while self.day and now - self.day[0] >= DAY_SECONDS:
            self.day.popleft()

    def token_total(self) -> int:
        return sum(int(entry[1]) for entry in self.tokens)


def _slots_wait(entries: Deque[float], count: int, limit: int, span: float, now: float) -> float:
    """Seconds until `count` more requests fit: the entry whose expiry frees the last needed slot."""
    if not entries:
        return 0.0
    index = min(len(entries) - 1, max(0, len(entries) + count - 1 - limit))
    return max(0.0, entries[index] + span - now)


def _limits_from_settings() -> Dict[Tuple[str, str], RateLimits]:
    limits = dict(DEFAULT_LIMITS)
    for key, values in (settings.RATE_LIMIT_OVERRIDES or {}).items():
        provider, _, model = key.partition(":")
        if not model:
            logger.warning("rate_limiter.invalid_override_key", extra={"key": key})
            continue
        base = limits.get((provider, model), FALLBACK_LIMITS)
        limits[(provider, model)] = RateLimits(
            rpm=int(values.get("rpm", base.rpm)),
            tpm=int(values.get("tpm", base.tpm)),
            rpd=int(values.get("rpd", base.rpd)),
        )
    return limits


class RateLimiter:
    def __init__(
        self,
        limits: Optional[Dict[Tuple[str, str], RateLimits]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(limits) if limits is not None else _limits_from_settings()
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._lock = threading.RLock()

    def limits_for(self, provider: str, model: str) -> RateLimits:
        return self._limits.get((provider, model), FALLBACK_LIMITS)

    def _window(self, provider: str, model: str) -> _Window:
        key = (provider, model)
        window = self._windows.get(key)
        if window is None:
            window = _Window()
            self._windows[key] = window
        return window

    def _check(self, provider: str, model: str, estimated_tokens: int, now: float) -> RateDecision:
        limits = self.limits_for(provider, model)
        window = self._window(provider, model)
        window.purge(now)

        if len(window.minute) >= limits.rpm:
            blocking = window.minute[len(window.minute) - limits.rpm]
            return RateDecision(
                allowed=False,
                reason=REASON_RPM,
                wait_seconds=max(0.0, blocking + MINUTE_SECONDS - now),
                provider=provider,
                model=model,
            )

        # An estimate above the ceiling could never pass; treat it as a full-window request.
        needed = min(max(0, int(estimated_tokens)), limits.tpm)
        used = window.token_total()
        if used + needed > limits.tpm:
            wait = 0.0
            freed = 0
            for timestamp, tokens in window.tokens:
                freed += int(tokens)
                wait = timestamp + MINUTE_SECONDS - now
                if used - freed + needed <= limits.tpm:
                    break
            return RateDecision(
                allowed=False,
                reason=REASON_TPM,
                wait_seconds=max(0.0, wait),
                provider=provider,
                model=model,
            )

        if len(window.day) >= limits.rpd:
            blocking = window.day[len(window.day) - limits.rpd]
            return RateDecision(
                allowed=False,
                reason=REASON_RPD,
                wait_seconds=max(0.0, blocking + DAY_SECONDS - now),
                provider=provider,
                model=model,
            )

        return RateDecision(allowed=True, provider=provider, model=model)

    def _record(self, provider: str, model: str, tokens: int, now: float) -> RateTicket:
        window = self._window(provider, model)
        window.minute.append(now)
        window.day.append(now)
        entry: List[Any] = [now, max(0, int(tokens))]
        window.tokens.append(entry)
        window.last_request_at = now
        return RateTicket(provider=provider, model=model, recorded_at=now, _token_entry=entry)

    def can_proceed(self, provider: str, model: str, estimated_tokens: int = 0) -> RateDecision:
        with self._lock:
            return self._check(provider, model, estimated_tokens, self._clock())

    def can_proceed_all(self, calls: Iterable[CallSpec]) -> RateDecision:
        """Check every call an item needs; nothing is recorded.

        Calls to the same (provider, model) are counted together so an item
        needing two calls on one model is not admitted with room for one.
        """
        with self._lock:
            now = self._clock()
            pending: Dict[Tuple[str, str], Tuple[int, int]] = {}
            for call in calls:
                count, tokens = pending.get((call.provider, call.model), (0, 0))
                pending[(call.provider, call.model)] = (count + 1, tokens + call.estimated_tokens)

            for (provider, model), (count, tokens) in pending.items():
                decision = self._check(provider, model, tokens, now)
                if not decision.allowed:
                    return decision
                if count > 1:
                    limits = self.limits_for(provider, model)
                    window = self._window(provider, model)
                    if len(window.minute) + count > limits.rpm:
                        return RateDecision(
                            allowed=False,
                            reason=REASON_RPM,
                            wait_seconds=_slots_wait(window.minute, count, limits.rpm, MINUTE_SECONDS, now),
                            provider=provider,
                            model=model,
                        )
                    if len(window.day) + count > limits.rpd:
                        return RateDecision(
                            allowed=False,
                            reason=REASON_RPD,
                            wait_seconds=_slots_wait(window.day, count, limits.rpd, DAY_SECONDS, now),
                            provider=provider,
                            model=model,
                        )
            return RateDecision(allowed=True)

    def record(self, provider: str, model: str, actual_tokens: int) -> RateTicket:
        with self._lock:
            return self._record(provider, model, actual_tokens, self._clock())

    def acquire(self, provider: str, model: str, estimated_tokens: int) -> RateDecision:
        """Check and record one call without letting another caller interleave."""
        with self._lock:
            now = self._clock()
            decision = self._check(provider, model, estimated_tokens, now)
            if decision.allowed:
                decision.ticket = self._record(provider, model, estimated_tokens, now)
            return decision

    def settle(self, ticket: RateTicket, actual_tokens: Optional[int]) -> None:
        if actual_tokens is None:
            return
        with self._lock:
            ticket._token_entry[1] = max(0, int(actual_tokens))

    def usage_stats(self, provider: str, model: str) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            window = self._window(provider, model)
            window.purge(now)
            limits = self.limits_for(provider, model)
            return {
                "provider": provider,
                "model": model,
                "rpm": len(window.minute),
                "tpm": window.token_total(),
                "rpd": len(window.day),
                "limits": {"rpm": limits.rpm, "tpm": limits.tpm, "rpd": limits.rpd},
                "seconds_since_last_request": (
                    None if window.last_request_at is None else round(now - window.last_request_at, 3)
                ),
            }

    def status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            keys = set(self._limits) | set(self._windows)
            return {
                f"{provider}:{model}": self.usage_stats(provider, model) for provider, model in sorted(keys)
            }

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_rate_limiter: Optional[RateLimiter] = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter shared by every job's processor."""
    global _rate_limiter
    with _rate_limiter_lock:
        if _rate_limiter is None:
            _rate_limiter = RateLimiter()
        return _rate_limiter
