"""
Unit tests for budget evaluation.
"""

from datetime import timedelta

import pytest

from cost_governor.core.monitor import BudgetEvaluator, Classification, _round_percent, classify
from cost_governor.storage.models import BudgetConfig, UsageRecord


def _spend(repository, cost, timestamp):
    repository.insert_usage(UsageRecord(
        timestamp=timestamp,
        provider="test",
        model="flat",
        prompt_tokens=0,
        completion_tokens=0,
        total_tokens=0,
        cost=cost,
    ))


class TestClassify:
    """Test the classification precedence."""

    @pytest.mark.parametrize("used,expected", [
        (0.0, Classification.SAFE),
        (7.49, Classification.SAFE),
        (7.5, Classification.WARNING),
        (8.99, Classification.WARNING),
        (9.0, Classification.CRITICAL),
        (9.99, Classification.CRITICAL),
        (10.0, Classification.EXCEEDED),
        (25.0, Classification.EXCEEDED),
    ])
    def test_thresholds(self, used, expected):
        assert classify(used, 10.0, 75) == expected

    def test_threshold_above_critical(self):
        # A 95% alert threshold still leaves critical at 90%
        assert classify(9.2, 10.0, 95) == Classification.CRITICAL

    def test_classification_is_monotonic(self):
        previous = Classification.SAFE
        for cents in range(0, 1500, 7):
            current = classify(cents / 100, 10.0, 75)
            assert current.severity >= previous.severity
            previous = current

    def test_percent_rounds_half_up(self):
        assert _round_percent(0.125, 1.0) == 13
        assert _round_percent(7.6, 10.0) == 76
        assert _round_percent(0.0, 10.0) == 0


class TestBudgetEvaluator:
    def test_evaluate_every_tier(self, repository, clock):
        _spend(repository, 8.0, clock())
        _spend(repository, 30.0, clock() - timedelta(days=3))

        evaluation = BudgetEvaluator(repository, clock).evaluate()

        daily = evaluation.tiers["daily"]
        assert list(evaluation.tiers) == ["daily", "weekly", "monthly"]
        assert daily.used == pytest.approx(8.0)
        assert daily.remaining == pytest.approx(2.0)
        assert daily.percent_used == 80
        assert daily.request_count == 1
        assert daily.classification == Classification.WARNING
        assert evaluation.tiers["weekly"].used == pytest.approx(38.0)
        assert evaluation.tiers["weekly"].classification == Classification.WARNING
        assert evaluation.tiers["monthly"].classification == Classification.SAFE

    def test_window_boundary_is_inclusive(self, repository, clock):
        _spend(repository, 1.0, clock() - timedelta(days=1))
        _spend(repository, 1.0, clock() - timedelta(days=1, microseconds=1))

        daily = BudgetEvaluator(repository, clock).evaluate().tiers["daily"]

        assert daily.request_count == 1

    def test_remaining_never_negative(self, repository, clock):
        _spend(repository, 12.0, clock())

        daily = BudgetEvaluator(repository, clock).evaluate().tiers["daily"]

        assert daily.remaining == 0.0
        assert daily.percent_used == 120
        assert daily.should_break

    def test_should_trip_first_exceeded_tier(self, repository, clock):
        repository.update_budget(BudgetConfig(daily_limit=100.0, weekly_limit=5.0,
                                              monthly_limit=4.0))
        _spend(repository, 6.0, clock())

        decision = BudgetEvaluator(repository, clock).should_trip()

        assert decision.should_trip
        assert decision.tier == "weekly"
        assert decision.reason == "weekly budget exceeded"
        assert decision.amount_exceeded == pytest.approx(1.0)

    def test_should_trip_disabled(self, repository, clock):
        repository.update_budget(BudgetConfig(circuit_breaker_enabled=False))
        _spend(repository, 50.0, clock())

        decision = BudgetEvaluator(repository, clock).should_trip()

        assert not decision.should_trip
        assert decision.reason == "disabled"

    def test_should_trip_no_breach(self, repository, clock):
        _spend(repository, 1.0, clock())

        decision = BudgetEvaluator(repository, clock).should_trip()

        assert not decision.should_trip
        assert decision.reason == "no breach"

    def test_budget_changes_apply_on_next_evaluation(self, repository, clock):
        evaluator = BudgetEvaluator(repository, clock)
        _spend(repository, 8.0, clock())
        assert evaluator.evaluate().tiers["daily"].classification == Classification.WARNING

        repository.update_budget(BudgetConfig(daily_limit=5.0))

        assert evaluator.evaluate().tiers["daily"].classification == Classification.EXCEEDED

    def test_status_summary(self, repository, clock):
        _spend(repository, 2.0, clock())

        summary = BudgetEvaluator(repository, clock).status_summary()

        assert summary.timestamp == clock()
        assert summary.providers[0].key == "test"
        assert summary.evaluation.tiers["daily"].used == pytest.approx(2.0)
