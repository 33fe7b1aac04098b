from datetime import datetime, timedelta, timezone

from cryptotracker.services.ratelimit import CallBudget, RateLimitPolicy, RefreshCooldown

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
POLICY = RateLimitPolicy()


def spend(budget, count, spacing=timedelta(minutes=5), start=T0):
    now = start
    for _ in range(count):
        assert budget.denial_reason(now, POLICY) is None
        budget = budget.record_call(now, POLICY)
        now += spacing
    return budget, now


class TestCallBudget:
    def test_fresh_budget_allows_a_call(self):
        assert CallBudget().denial_reason(T0, POLICY) is None
        assert not CallBudget().is_exhausted(T0, POLICY)

    def test_minimum_spacing_between_calls(self):
        budget = CallBudget().record_call(T0, POLICY)
        assert budget.denial_reason(T0 + timedelta(minutes=4), POLICY) == "min_interval"
        assert budget.denial_reason(T0 + timedelta(minutes=5), POLICY) is None

    def test_follow_up_call_skips_spacing_but_not_cap(self):
        budget = CallBudget().record_call(T0, POLICY)
        assert budget.denial_reason(T0 + timedelta(minutes=1), POLICY, respect_min_interval=False) is None

        budget, now = spend(CallBudget(), 5)
        assert budget.denial_reason(now, POLICY, respect_min_interval=False) == "window_cap_reached"

    def test_cap_per_window(self):
        budget, now = spend(CallBudget(), 5)
        assert budget.calls_in_window(now, POLICY) == 5
        assert budget.is_exhausted(now, POLICY)
        assert budget.denial_reason(now, POLICY) == "window_cap_reached"
        assert budget.resets_at(now, POLICY) == T0 + POLICY.window

    def test_calls_age_out_of_window(self):
        budget, _ = spend(CallBudget(), 5)
        later = T0 + POLICY.window + timedelta(minutes=1)
        assert budget.calls_in_window(later, POLICY) == 4
        assert budget.denial_reason(later, POLICY) is None

    def test_upstream_429_exhausts_immediately(self):
        budget = CallBudget().record_call(T0, POLICY).exhaust(T0, POLICY)
        assert budget.is_exhausted(T0 + timedelta(hours=1), POLICY)
        assert budget.denial_reason(T0 + timedelta(hours=1), POLICY) == "upstream_rate_limited"
        assert budget.resets_at(T0, POLICY) == T0 + timedelta(hours=8)
        assert not budget.is_exhausted(T0 + timedelta(hours=8), POLICY)

    def test_transitions_do_not_mutate(self):
        budget = CallBudget()
        budget.record_call(T0, POLICY)
        assert budget.calls == ()

    def test_restores_from_persisted_form(self):
        budget = CallBudget().record_call(T0, POLICY).exhaust(T0, POLICY)
        restored = CallBudget.from_dict(budget.to_dict())
        assert restored == budget
        assert CallBudget.from_dict(None) == CallBudget()
        assert CallBudget.from_dict({"calls": ["garbage"]}).calls == ()


class TestRefreshCooldown:
    def test_initially_allowed(self):
        assert RefreshCooldown().is_allowed(T0)
        assert RefreshCooldown().remaining(T0) == timedelta(0)

    def test_cooldown_after_refresh(self):
        cooldown = RefreshCooldown().mark_completed(T0, timedelta(hours=8))
        assert not cooldown.is_allowed(T0 + timedelta(hours=7, minutes=59))
        assert cooldown.remaining(T0 + timedelta(hours=6)) == timedelta(hours=2)
        assert cooldown.is_allowed(T0 + timedelta(hours=8))

    def test_penalty_extends_cooldown(self):
        cooldown = RefreshCooldown().with_penalty(T0, timedelta(hours=8), timedelta(hours=2))
        assert cooldown.last_refresh == T0
        assert cooldown.cooldown_until == T0 + timedelta(hours=10)

    def test_persisted_form(self):
        cooldown = RefreshCooldown().mark_completed(T0, timedelta(hours=8))
        assert RefreshCooldown.from_dict(cooldown.to_dict()) == cooldown
        assert RefreshCooldown.from_dict("nonsense") == RefreshCooldown()
