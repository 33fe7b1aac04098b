"""Rate-limit state machines.

``CallBudget`` tracks the price provider's rolling call window and
``RefreshCooldown`` tracks when the portfolio may next spend that budget on
a network refresh. Both are immutable; every transition takes ``now`` and
returns a new state, so they can be tested without touching the wall clock.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class RateLimitPolicy:
    window: timedelta = timedelta(hours=8)
    min_interval: timedelta = timedelta(minutes=5)
    max_calls: int = 5


@dataclass(frozen=True)
class CallBudget:
    """Calls made inside the rolling window plus any forced exhaustion."""

    calls: Tuple[datetime, ...] = field(default_factory=tuple)
    exhausted_until: Optional[datetime] = None

    @property
    def last_call(self) -> Optional[datetime]:
        return self.calls[-1] if self.calls else None

    def prune(self, now: datetime, policy: RateLimitPolicy) -> "CallBudget":
        """Drop calls that fell out of the window and an expired exhaustion mark."""
        calls = tuple(c for c in self.calls if now - c < policy.window)
        exhausted_until = self.exhausted_until
        if exhausted_until is not None and now >= exhausted_until:
            exhausted_until = None
        return replace(self, calls=calls, exhausted_until=exhausted_until)

    def calls_in_window(self, now: datetime, policy: RateLimitPolicy) -> int:
        return len(self.prune(now, policy).calls)

    def is_exhausted(self, now: datetime, policy: RateLimitPolicy) -> bool:
        """True when no call is possible until the window rolls over."""
        state = self.prune(now, policy)
        return state.exhausted_until is not None or len(state.calls) >= policy.max_calls

    def denial_reason(
        self, now: datetime, policy: RateLimitPolicy, respect_min_interval: bool = True
    ) -> Optional[str]:
        """Why a call made at ``now`` would be refused, or None if it may proceed.

        ``respect_min_interval=False`` skips the spacing check but still
        enforces the window cap and upstream exhaustion.
        """
        state = self.prune(now, policy)
        if state.exhausted_until is not None:
            return "upstream_rate_limited"
        if len(state.calls) >= policy.max_calls:
            return "window_cap_reached"
        last = state.last_call
        if respect_min_interval and last is not None and now - last < policy.min_interval:
            return "min_interval"
        return None

    def record_call(self, now: datetime, policy: RateLimitPolicy) -> "CallBudget":
        state = self.prune(now, policy)
        return replace(state, calls=state.calls + (now,))

    def exhaust(self, now: datetime, policy: RateLimitPolicy) -> "CallBudget":
        """Fast-forward to 'spent' after an upstream 429."""
        state = self.prune(now, policy)
        return replace(state, exhausted_until=now + policy.window)

    def resets_at(self, now: datetime, policy: RateLimitPolicy) -> Optional[datetime]:
        state = self.prune(now, policy)
        if state.exhausted_until is not None:
            return state.exhausted_until
        if len(state.calls) >= policy.max_calls:
            return state.calls[0] + policy.window
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calls": [c.isoformat() for c in self.calls],
            "exhausted_until": self.exhausted_until.isoformat() if self.exhausted_until else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CallBudget":
        if not isinstance(data, dict):
            return cls()
        calls = tuple(sorted(c for c in (_parse(v) for v in data.get("calls", [])) if c is not None))
        return cls(calls=calls, exhausted_until=_parse(data.get("exhausted_until")))


@dataclass(frozen=True)
class RefreshCooldown:
    """When the last network refresh finished and when the next one is allowed."""

    last_refresh: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None

    def is_allowed(self, now: datetime) -> bool:
        return self.cooldown_until is None or now >= self.cooldown_until

    def remaining(self, now: datetime) -> timedelta:
        if self.is_allowed(now):
            return timedelta(0)
        return self.cooldown_until - now

    def mark_completed(self, now: datetime, cooldown: timedelta) -> "RefreshCooldown":
        return RefreshCooldown(last_refresh=now, cooldown_until=now + cooldown)

    def with_penalty(self, now: datetime, cooldown: timedelta, penalty: timedelta) -> "RefreshCooldown":
        """Manual refresh taken early: standard cooldown plus a penalty."""
        return RefreshCooldown(last_refresh=now, cooldown_until=now + cooldown + penalty)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RefreshCooldown":
        if not isinstance(data, dict):
            return cls()
        return cls(
            last_refresh=_parse(data.get("last_refresh")),
            cooldown_until=_parse(data.get("cooldown_until")),
        )
