"""
Usage correlation.

Pairs the start and completion of every provider call by request id,
prices the tokens it consumed and appends the result to the ledger.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .pricing import calculate_cost
from .token_counter import extract_token_usage
from cost_governor.storage.models import UsageRecord
from cost_governor.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 10_000


@dataclass(frozen=True)
class PendingRequest:
    """Call context captured when a provider call starts."""
    request_id: str
    provider: str
    model: str
    started_at: datetime
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PendingRequestTable:
    """Thread-safe, bounded map of in-flight requests keyed by request id.

    Entries for calls that never complete stay until the host discards or
    purges them. When the table is full the oldest entry is evicted.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_PENDING):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, PendingRequest]" = OrderedDict()
        self._lock = threading.Lock()

    def put(self, pending: PendingRequest) -> Optional[PendingRequest]:
        """Insert an entry, returning the one it replaced (if any)."""
        with self._lock:
            replaced = self._entries.pop(pending.request_id, None)
            self._entries[pending.request_id] = pending
            while len(self._entries) > self.max_entries:
                evicted_id, _ = self._entries.popitem(last=False)
                logger.warning("Pending request table full, evicted %s", evicted_id)
            return replaced

    def pop(self, request_id: str) -> Optional[PendingRequest]:
        with self._lock:
            return self._entries.pop(request_id, None)

    def purge_older_than(self, cutoff: datetime) -> List[PendingRequest]:
        with self._lock:
            stale = [p for p in self._entries.values() if p.started_at < cutoff]
            for pending in stale:
                del self._entries[pending.request_id]
            return stale

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class UsageCorrelator:
    """Turns start/complete hook pairs into priced usage records."""

    def __init__(
        self,
        repository: LedgerRepository,
        max_pending: int = DEFAULT_MAX_PENDING,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.pending = PendingRequestTable(max_pending)
        self.clock = clock

    def on_start(
        self,
        request_id: str,
        provider: str,
        model: str,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Register a pending request. A duplicate id overwrites the old entry."""
        replaced = self.pending.put(PendingRequest(
            request_id=request_id,
            provider=provider,
            model=model,
            started_at=self.clock(),
            agent_id=agent_id,
            session_id=session_id,
            metadata=dict(metadata or {}),
        ))
        if replaced is not None:
            logger.warning("Request %s was already pending, replacing it", request_id)

    def on_complete(self, request_id: str, response: Any) -> Optional[UsageRecord]:
        """Close a pending request and append its usage record.

        Returns:
            The written record, or None if no pending entry matched
        """
        pending = self.pending.pop(request_id)
        if pending is None:
            logger.warning("No pending request found for ID: %s", request_id)
            return None

        usage = extract_token_usage(response, pending.provider)
        cost = self._price(pending.provider, pending.model, usage)

        record = UsageRecord(
            timestamp=pending.started_at,
            provider=pending.provider,
            model=pending.model,
            agent_id=pending.agent_id,
            session_id=pending.session_id,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=cost,
            task_type=pending.metadata.get("task_type"),
            metadata=pending.metadata,
        )
        self.repository.insert_usage(record)
        return record

    def discard(self, request_id: str) -> bool:
        """Drop a pending request whose call was abandoned."""
        return self.pending.pop(request_id) is not None

    def purge_abandoned(self, older_than: datetime) -> int:
        """Drop every pending request started before ``older_than``."""
        stale = self.pending.purge_older_than(older_than)
        for pending in stale:
            logger.info("Purged abandoned request %s (%s/%s)",
                        pending.request_id, pending.provider, pending.model)
        return len(stale)

    def _price(self, provider: str, model: str, usage) -> float:
        pricing = self.repository.get_pricing(provider, model)
        if pricing is None:
            logger.warning("No pricing found for %s/%s, recording cost 0", provider, model)
            return 0.0
        return calculate_cost(pricing, usage)
