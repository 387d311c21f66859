"""
Unit tests for storage layer.

Tests schema creation, ledger writes and the aggregate queries.
"""

from datetime import datetime, timedelta

import pytest

from cost_governor.storage.db import get_connection
from cost_governor.storage.models import (
    AgentLicense,
    BreakerEvent,
    BreakerEventType,
    BudgetConfig,
    ModelPricing,
    PaymentRequest,
    PaymentStatus,
    PaymentTransaction,
    UsageRecord,
)
from cost_governor.storage.repository import (
    DuplicateSettlementError,
    LedgerRepository,
    initialize_schema,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


def _record(cost, provider="openai", model="gpt-4", agent_id=None, timestamp=NOW, **kwargs):
    return UsageRecord(
        timestamp=timestamp,
        provider=provider,
        model=model,
        prompt_tokens=100,
        completion_tokens=50,
        total_tokens=150,
        cost=cost,
        agent_id=agent_id,
        **kwargs
    )


def _transaction(ref="0x" + "a" * 64, wallet="0xagent"):
    return PaymentTransaction(
        wallet=wallet,
        settlement_ref=ref,
        amount=0.5,
        token="USDT",
        chain="base",
        timestamp=NOW,
        tier_granted="pro",
        duration_months=1,
    )


def _grant(existing):
    """Add 30 days to the wallet's license, starting from now if it has none."""
    start = existing.paid_until if existing else NOW
    return AgentLicense(
        wallet="0xagent",
        tier="pro",
        paid_until=start + timedelta(days=30),
        period_start=existing.period_start if existing else NOW,
        months_purchased=(existing.months_purchased if existing else 0) + 1,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify every ledger table is created."""
        initialize_schema(db_path)

        conn = get_connection(db_path)
        try:
            tables = {
                row[0]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        finally:
            conn.close()

        assert {
            "usage", "budgets", "pricing", "breaker_events", "alert_channels",
            "payment_requests", "payment_transactions", "agent_licenses",
        } <= tables

    def test_schema_is_idempotent_and_keeps_budget(self, db_path):
        """Re-initializing must not overwrite an edited budget."""
        initialize_schema(db_path)
        repo = LedgerRepository(db_path)
        repo.update_budget(BudgetConfig(daily_limit=3.0))

        initialize_schema(db_path, budget=BudgetConfig(daily_limit=99.0))

        assert repo.get_budget().daily_limit == 3.0

    def test_seed_pricing_does_not_overwrite(self, db_path):
        initialize_schema(db_path, seed_pricing=[ModelPricing("openai", "gpt-4", 0.03, 0.06)])
        repo = LedgerRepository(db_path)
        repo.upsert_pricing(ModelPricing("openai", "gpt-4", 0.01, 0.02))

        initialize_schema(db_path, seed_pricing=[ModelPricing("openai", "gpt-4", 0.03, 0.06)])

        assert repo.get_pricing("openai", "gpt-4").prompt_cost_per_1k == 0.01


class TestUsageQueries:
    """Test usage insertion and windowed aggregates."""

    def test_insert_and_fetch(self, repository):
        repository.insert_usage(_record(0.25, agent_id="agent-1", session_id="s1",
                                        task_type="summarize", metadata={"message_count": 2}))

        records = repository.get_recent_usage(NOW - timedelta(hours=1))

        assert len(records) == 1
        record = records[0]
        assert record.timestamp == NOW
        assert record.agent_id == "agent-1"
        assert record.session_id == "s1"
        assert record.task_type == "summarize"
        assert record.metadata == {"message_count": 2}
        assert record.cost == 0.25

    def test_negative_cost_rejected(self):
        with pytest.raises(ValueError, match="cost cannot be negative"):
            _record(-1.0)

    def test_window_totals_inclusive_lower_bound(self, repository):
        repository.insert_usage(_record(1.0, timestamp=NOW - timedelta(days=1)))
        repository.insert_usage(_record(2.0, timestamp=NOW - timedelta(days=1, seconds=1)))

        total, count = repository.get_window_totals(NOW - timedelta(days=1))

        assert total == pytest.approx(1.0)
        assert count == 1

    def test_window_totals_empty(self, repository):
        assert repository.get_window_totals(NOW) == (0.0, 0)

    def test_provider_breakdown_most_expensive_first(self, repository):
        repository.insert_usage(_record(1.0, provider="openai", model="gpt-4"))
        repository.insert_usage(_record(3.0, provider="anthropic", model="claude-opus-4-5"))
        repository.insert_usage(_record(0.5, provider="openai", model="gpt-4"))

        rows = repository.get_provider_breakdown(NOW - timedelta(hours=1))

        assert [(r.key, r.model) for r in rows] == [
            ("anthropic", "claude-opus-4-5"),
            ("openai", "gpt-4"),
        ]
        assert rows[1].request_count == 2
        assert rows[1].total_cost == pytest.approx(1.5)
        assert len(repository.get_provider_breakdown(NOW - timedelta(hours=1), limit=1)) == 1

    def test_top_agents_skips_anonymous(self, repository):
        repository.insert_usage(_record(1.0, agent_id="a"))
        repository.insert_usage(_record(2.0, agent_id="b"))
        repository.insert_usage(_record(5.0))

        agents = repository.get_top_agents(NOW - timedelta(hours=1))

        assert [a.key for a in agents] == ["b", "a"]

    def test_recent_usage_most_expensive_first(self, repository):
        repository.insert_usage(_record(1.0, timestamp=NOW))
        repository.insert_usage(_record(4.0, timestamp=NOW - timedelta(minutes=5)))
        repository.insert_usage(_record(2.0, timestamp=NOW - timedelta(minutes=10)))

        records = repository.get_recent_usage(
            NOW - timedelta(hours=1), limit=2, most_expensive_first=True
        )

        assert [r.cost for r in records] == [4.0, 2.0]


class TestBreakerLog:
    def test_last_event_is_tail(self, repository):
        assert repository.get_last_breaker_event() is None

        first = repository.insert_breaker_event(
            BreakerEvent(NOW, BreakerEventType.TRIP, "daily budget exceeded", "daily", 0.5)
        )
        second = repository.insert_breaker_event(
            BreakerEvent(NOW, BreakerEventType.RESET, "Manual reset")
        )

        assert first.id is not None and second.id > first.id
        tail = repository.get_last_breaker_event()
        assert tail.event_type == BreakerEventType.RESET
        assert len(repository.get_breaker_events(NOW - timedelta(days=7))) == 2


class TestAlertChannels:
    def test_add_and_disable(self, repository):
        channel = repository.add_alert_channel("webhook", {"url": "http://example.test"})
        repository.add_alert_channel("console", {})

        assert repository.set_alert_channel_enabled(channel.id, False)

        enabled = repository.get_alert_channels()
        assert [c.type for c in enabled] == ["console"]
        assert len(repository.get_alert_channels(enabled_only=False)) == 2


class TestPayments:
    def _request(self, repository, request_id="req-1"):
        repository.insert_payment_request(PaymentRequest(
            request_id=request_id,
            wallet="0xagent",
            amount=0.5,
            token="USDT",
            tier="pro_monthly",
            status=PaymentStatus.PENDING,
            created_at=NOW,
        ))

    def test_complete_payment_only_once(self, repository):
        self._request(repository)

        granted = repository.complete_payment("req-1", _transaction(), NOW, _grant)
        assert granted.paid_until == NOW + timedelta(days=30)
        assert repository.complete_payment(
            "req-1", _transaction("0x" + "b" * 64), NOW, _grant
        ) is None

        request = repository.get_payment_request("req-1")
        assert request.status == PaymentStatus.COMPLETED
        assert request.settlement_ref == "0x" + "a" * 64
        assert len(repository.list_payment_transactions("0xagent")) == 1
        assert repository.get_license("0xagent") == granted

    def test_grant_sees_current_license(self, repository):
        self._request(repository)
        repository.upsert_license(AgentLicense("0xagent", "pro", NOW + timedelta(days=5)), NOW)
        seen = []

        def grant(existing):
            seen.append(existing)
            return _grant(existing)

        repository.complete_payment("req-1", _transaction(), NOW, grant)

        assert seen[0].paid_until == NOW + timedelta(days=5)

    def test_duplicate_settlement_rolls_back(self, repository):
        self._request(repository, "req-1")
        self._request(repository, "req-2")
        repository.complete_payment("req-1", _transaction(), NOW, _grant)

        with pytest.raises(DuplicateSettlementError):
            repository.complete_payment("req-2", _transaction(), NOW, _grant)

        assert repository.get_payment_request("req-2").status == PaymentStatus.PENDING
        assert len(repository.list_payment_transactions()) == 1

    def test_failed_grant_rolls_back(self, repository):
        self._request(repository)

        def grant(existing):
            raise RuntimeError("grant failed")

        with pytest.raises(RuntimeError):
            repository.complete_payment("req-1", _transaction(), NOW, grant)

        assert repository.get_payment_request("req-1").status == PaymentStatus.PENDING
        assert not repository.settlement_ref_exists("0x" + "a" * 64)

    def test_settlement_ref_exists(self, repository):
        self._request(repository)
        assert not repository.settlement_ref_exists("0x" + "a" * 64)
        repository.complete_payment("req-1", _transaction(), NOW, _grant)
        assert repository.settlement_ref_exists("0x" + "a" * 64)

    def test_upsert_license(self, repository):
        repository.upsert_license(AgentLicense("0xagent", "pro", NOW + timedelta(days=30)), NOW)
        repository.upsert_license(AgentLicense("0xagent", "pro", NOW + timedelta(days=60)), NOW)

        agent_license = repository.get_license("0xagent")
        assert agent_license.paid_until == NOW + timedelta(days=60)
        assert repository.get_license("0xother") is None

    def test_extend_license(self, repository):
        first = repository.extend_license("0xagent", _grant, NOW)
        second = repository.extend_license("0xagent", _grant, NOW)

        assert first.paid_until == NOW + timedelta(days=30)
        assert second.paid_until == NOW + timedelta(days=60)
        assert repository.get_license("0xagent").period_start == NOW

    def test_payment_stats(self, repository):
        self._request(repository)
        repository.complete_payment("req-1", _transaction(), NOW, _grant)

        stats = repository.get_payment_stats(NOW)

        assert stats == {
            "transaction_count": 1,
            "total_revenue": 0.5,
            "unique_payers": 1,
            "active_subscriptions": 1,
        }
