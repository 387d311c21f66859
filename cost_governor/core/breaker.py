"""
Circuit breaker.

Two states, armed and tripped. The state is never stored directly: it is
derived from the newest entry of the breaker event log, so it survives
process restarts.

Every transition writes its event before touching the host configuration.
A failed side effect is reported through the result but the transition
stands, since the log is the authority.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from .host_config import NullHostConfig, ProviderSwitch
from cost_governor.storage.models import BreakerEvent, BreakerEventType
from cost_governor.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    ARMED = "armed"
    TRIPPED = "tripped"


@dataclass(frozen=True)
class BreakerResult:
    """Outcome of a trip or reset request."""
    success: bool
    state: BreakerState
    message: str
    event: Optional[BreakerEvent] = None
    error: Optional[str] = None

    @property
    def transitioned(self) -> bool:
        return self.event is not None


@dataclass
class BreakerStatus:
    state: BreakerState
    last_event: Optional[BreakerEvent]
    recent_events: List[BreakerEvent] = field(default_factory=list)

    @property
    def tripped(self) -> bool:
        return self.state == BreakerState.TRIPPED


def replay_state(last_event: Optional[BreakerEvent]) -> BreakerState:
    """Tripped iff the newest event is a trip (no later reset)."""
    if last_event is not None and last_event.event_type == BreakerEventType.TRIP:
        return BreakerState.TRIPPED
    return BreakerState.ARMED


class CircuitBreaker:
    """Trip/reset state machine over the breaker event log."""

    def __init__(
        self,
        repository: LedgerRepository,
        host_config: Optional[ProviderSwitch] = None,
        clock: Callable[[], datetime] = datetime.now,
        pause_window: timedelta = timedelta(hours=1),
    ):
        self.repository = repository
        self.host_config = host_config or NullHostConfig()
        self.clock = clock
        self.pause_window = pause_window
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        return replay_state(self.repository.get_last_breaker_event())

    @property
    def tripped(self) -> bool:
        return self.state == BreakerState.TRIPPED

    def trip(
        self,
        reason: str,
        tier: Optional[str] = None,
        amount_exceeded: Optional[float] = None,
    ) -> BreakerResult:
        with self._lock:
            if self.tripped:
                logger.info("Circuit breaker already tripped")
                return BreakerResult(
                    success=False, state=BreakerState.TRIPPED, message="Already tripped"
                )

            logger.warning("Tripping circuit breaker: %s", reason)
            event = self.repository.insert_breaker_event(BreakerEvent(
                timestamp=self.clock(),
                event_type=BreakerEventType.TRIP,
                reason=reason,
                tier=tier,
                amount_exceeded=amount_exceeded,
            ))

            try:
                self.host_config.pause(self._providers_to_pause())
            except Exception as e:
                logger.error("Error pausing providers: %s", e)
                return BreakerResult(
                    success=False,
                    state=BreakerState.TRIPPED,
                    message="Circuit breaker tripped, but providers could not be paused",
                    event=event,
                    error=str(e),
                )

            return BreakerResult(
                success=True,
                state=BreakerState.TRIPPED,
                message="Circuit breaker activated. Agents paused to prevent further charges.",
                event=event,
            )

    def reset(self, manual: bool = True) -> BreakerResult:
        with self._lock:
            if not self.tripped:
                logger.info("Circuit breaker not tripped")
                return BreakerResult(
                    success=False, state=BreakerState.ARMED, message="Not tripped"
                )

            reason = "Manual reset" if manual else "Automatic reset"
            logger.info("Resetting circuit breaker (%s)", reason.lower())
            event = self.repository.insert_breaker_event(BreakerEvent(
                timestamp=self.clock(),
                event_type=BreakerEventType.RESET,
                reason=reason,
            ))

            try:
                self.host_config.resume()
            except Exception as e:
                logger.error("Error restoring host config: %s", e)
                return BreakerResult(
                    success=False,
                    state=BreakerState.ARMED,
                    message="Circuit breaker reset, but providers could not be restored",
                    event=event,
                    error=str(e),
                )

            return BreakerResult(
                success=True,
                state=BreakerState.ARMED,
                message="Circuit breaker reset. Agents re-enabled.",
                event=event,
            )

    def status(self) -> BreakerStatus:
        last_event = self.repository.get_last_breaker_event()
        return BreakerStatus(
            state=replay_state(last_event),
            last_event=last_event,
            recent_events=self.repository.get_breaker_events(self.clock() - timedelta(days=7)),
        )

    def _providers_to_pause(self) -> List[str]:
        # Providers that spent anything in the recent window, most expensive first
        providers: List[str] = []
        since = self.clock() - self.pause_window
        for row in self.repository.get_provider_breakdown(since):
            if row.total_cost > 0 and row.key not in providers:
                providers.append(row.key)
        return providers
