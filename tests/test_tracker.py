"""
Unit tests for usage correlation.
"""

import threading
from datetime import timedelta

import pytest

from conftest import usage_response
from cost_governor.core.tracker import PendingRequest, PendingRequestTable, UsageCorrelator


class TestPendingRequestTable:
    def _pending(self, request_id, clock):
        return PendingRequest(request_id, "openai", "gpt-4", clock())

    def test_put_and_pop(self, clock):
        table = PendingRequestTable()
        table.put(self._pending("r1", clock))

        assert "r1" in table
        assert table.pop("r1").request_id == "r1"
        assert table.pop("r1") is None
        assert len(table) == 0

    def test_oldest_entry_evicted_when_full(self, clock):
        table = PendingRequestTable(max_entries=2)
        for request_id in ("r1", "r2", "r3"):
            table.put(self._pending(request_id, clock))

        assert len(table) == 2
        assert "r1" not in table
        assert "r3" in table

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            PendingRequestTable(max_entries=0)

    def test_concurrent_put_and_pop(self, clock):
        """Test every id put from several threads is popped exactly once."""
        table = PendingRequestTable()
        popped = []
        popped_lock = threading.Lock()

        def worker(prefix):
            for i in range(50):
                table.put(self._pending(f"{prefix}-{i}", clock))
            for i in range(50):
                entry = table.pop(f"{prefix}-{i}")
                with popped_lock:
                    popped.append(entry.request_id)

        threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(popped) == 200
        assert len(set(popped)) == 200
        assert len(table) == 0


class TestUsageCorrelator:
    """Test start/complete pairing and record creation."""

    def test_complete_writes_priced_record(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        correlator.on_start("r1", "openai", "gpt-4", agent_id="agent-1", session_id="s1",
                            metadata={"task_type": "research"})

        record = correlator.on_complete("r1", usage_response(1000, 500))

        assert record.cost == pytest.approx(0.06)
        assert record.total_tokens == 1500
        assert record.agent_id == "agent-1"
        assert record.session_id == "s1"
        assert record.task_type == "research"
        assert len(repository.get_recent_usage(clock() - timedelta(hours=1))) == 1

    def test_record_timestamp_is_start_time(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        started = clock()
        correlator.on_start("r1", "openai", "gpt-4")
        clock.advance(seconds=30)

        record = correlator.on_complete("r1", usage_response(10))

        assert record.timestamp == started

    def test_unknown_completion_is_noop(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)

        assert correlator.on_complete("never-started", usage_response(1000)) is None
        assert repository.get_window_totals(clock() - timedelta(days=1)) == (0.0, 0)

    def test_second_completion_is_noop(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        correlator.on_start("r1", "openai", "gpt-4")

        assert correlator.on_complete("r1", usage_response(10)) is not None
        assert correlator.on_complete("r1", usage_response(10)) is None
        assert repository.get_window_totals(clock() - timedelta(days=1))[1] == 1

    def test_duplicate_start_overwrites(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        correlator.on_start("r1", "openai", "gpt-4")
        correlator.on_start("r1", "openai", "gpt-3.5-turbo")

        record = correlator.on_complete("r1", usage_response(10))

        assert record.model == "gpt-3.5-turbo"
        assert len(correlator.pending) == 0

    def test_missing_pricing_records_zero_cost(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        correlator.on_start("r1", "openai", "no-such-model")

        record = correlator.on_complete("r1", usage_response(5000, 5000))

        assert record.cost == 0.0
        assert record.total_tokens == 10000

    def test_record_count_matches_completions(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        for i in range(5):
            correlator.on_start(f"r{i}", "test", "flat")
        for i in (0, 2, 4):
            correlator.on_complete(f"r{i}", usage_response(100))
        correlator.on_complete("unknown", usage_response(100))

        total, count = repository.get_window_totals(clock() - timedelta(days=1))

        assert count == 3
        assert total == pytest.approx(0.3)
        assert len(correlator.pending) == 2

    def test_discard_and_purge(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        correlator.on_start("old", "openai", "gpt-4")
        clock.advance(hours=2)
        correlator.on_start("fresh", "openai", "gpt-4")
        correlator.on_start("dropped", "openai", "gpt-4")

        assert correlator.discard("dropped") is True
        assert correlator.discard("dropped") is False
        assert correlator.purge_abandoned(clock() - timedelta(hours=1)) == 1
        assert "fresh" in correlator.pending
        assert "old" not in correlator.pending

    def test_negative_reported_count_still_records_call(self, repository, clock):
        correlator = UsageCorrelator(repository, clock=clock)
        correlator.on_start("r1", "test", "flat")

        record = correlator.on_complete("r1", usage_response(-1000, 100))

        assert record is not None
        assert record.prompt_tokens == 0
        assert record.cost == pytest.approx(0.1)
        assert repository.get_window_totals(clock() - timedelta(days=1))[1] == 1

    def test_concurrent_calls_record_each_completion_once(self, repository, clock):
        """Test interleaved starts and completions from many threads."""
        correlator = UsageCorrelator(repository, clock=clock)
        workers = 8
        calls_per_worker = 10
        errors = []

        def agent(n):
            try:
                for i in range(calls_per_worker):
                    request_id = f"agent{n}-call{i}"
                    correlator.on_start(request_id, "test", "flat", agent_id=f"agent{n}")
                    correlator.on_complete(request_id, usage_response(10))
                    correlator.on_complete(request_id, usage_response(10))
                correlator.on_complete(f"agent{n}-unmatched", usage_response(10))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=agent, args=(n,)) for n in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        total, count = repository.get_window_totals(clock() - timedelta(days=1))

        assert errors == []
        assert count == workers * calls_per_worker
        assert total == pytest.approx(workers * calls_per_worker * 0.01)
        assert len(correlator.pending) == 0
