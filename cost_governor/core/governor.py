"""
Cost governor context.

Wires the correlator, budget evaluator, breaker, alert dispatcher and
license manager over one ledger. The host process constructs one governor
and passes it to its hooks; there is no module-level instance.

Completion path:
1. Correlate and record the usage
2. Re-evaluate every budget tier
3. Trip the breaker on the first exceeded tier (if enabled)
4. Alert on tiers whose classification changed
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .alerts import AlertContext, AlertDispatcher, AlertTransport, AlertType, alert_type_for
from .breaker import BreakerResult, BreakerStatus, CircuitBreaker
from .host_config import JsonHostConfig, ProviderSwitch
from .licensing import LicenseManager, LicenseStatus, PaymentError, SettlementVerifier
from .monitor import (
    TIER_WINDOWS,
    BudgetEvaluation,
    BudgetEvaluator,
    Classification,
    StatusSummary,
    TierStatus,
    TripDecision,
)
from .pricing import DEFAULT_PRICING
from .tracker import UsageCorrelator
from cost_governor.config.loader import GovernorConfig
from cost_governor.storage.models import BudgetConfig, CostBreakdown, UsageRecord
from cost_governor.storage.repository import LedgerRepository, initialize_schema

logger = logging.getLogger(__name__)

RECENT_EXPENSIVE_WINDOW = timedelta(hours=1)


class LicenseRequiredError(Exception):
    """Raised when a report reaches beyond the free history window."""


@dataclass
class GovernorStatus:
    summary: StatusSummary
    breaker: BreakerStatus

    @property
    def evaluation(self) -> BudgetEvaluation:
        return self.summary.evaluation


@dataclass
class UsageReport:
    days: int
    total_cost: float
    request_count: int
    providers: List[CostBreakdown] = field(default_factory=list)
    top_agents: List[CostBreakdown] = field(default_factory=list)
    timeline: List[UsageRecord] = field(default_factory=list)

    @property
    def average_cost(self) -> float:
        return self.total_cost / self.request_count if self.request_count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days": self.days,
            "total_cost": self.total_cost,
            "request_count": self.request_count,
            "providers": [
                {"provider": p.key, "model": p.model, "request_count": p.request_count,
                 "total_tokens": p.total_tokens, "total_cost": p.total_cost}
                for p in self.providers
            ],
            "top_agents": [
                {"agent_id": a.key, "request_count": a.request_count, "total_cost": a.total_cost}
                for a in self.top_agents
            ],
            "timeline": [
                {"timestamp": r.timestamp.isoformat(), "provider": r.provider, "model": r.model,
                 "agent_id": r.agent_id, "total_tokens": r.total_tokens, "cost": r.cost}
                for r in self.timeline
            ],
        }


def bootstrap_ledger(config: GovernorConfig, repository: Optional[LedgerRepository] = None) -> LedgerRepository:
    """Create the schema, seed pricing and register configured channels.

    Channels from the config are only registered while the channel registry
    is empty; after that the ledger is authoritative.
    """
    repository = repository or LedgerRepository(config.database)
    initialize_schema(repository.db_path, seed_pricing=DEFAULT_PRICING, budget=config.budget)
    for pricing in config.pricing:
        repository.upsert_pricing(pricing)
    if not repository.get_alert_channels(enabled_only=False):
        for channel in config.alerts.channels:
            repository.add_alert_channel(channel.type, channel.config, channel.enabled)
    return repository


class CostGovernor:
    """Admission-control loop over the cost ledger."""

    def __init__(
        self,
        repository: LedgerRepository,
        config: Optional[GovernorConfig] = None,
        host_config: Optional[ProviderSwitch] = None,
        transports: Optional[Dict[str, AlertTransport]] = None,
        verifier: Optional[SettlementVerifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.config = config or GovernorConfig(database=repository.db_path)
        self.clock = clock

        self.correlator = UsageCorrelator(repository, self.config.max_pending, clock)
        self.evaluator = BudgetEvaluator(repository, clock)
        self.breaker = CircuitBreaker(
            repository,
            host_config,
            clock,
            pause_window=timedelta(hours=self.config.breaker.pause_window_hours),
        )
        self.alerts = AlertDispatcher(
            repository,
            transports,
            cooldown=timedelta(minutes=self.config.alerts.cooldown_minutes),
            clock=clock,
        )
        self.licenses = LicenseManager(
            repository,
            recipient=self.config.payments.recipient,
            callback_url=self.config.payments.callback_url,
            tiers=self.config.payments.tiers,
            verifier=verifier,
            clock=clock,
        )

        # Last classification seen per tier; process lifetime only
        self._last_status: Dict[str, Classification] = {}
        self._status_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: GovernorConfig, **kwargs: Any) -> "CostGovernor":
        """Build a governor with the default wiring for ``config``."""
        repository = bootstrap_ledger(config)
        if "host_config" not in kwargs and config.host_config:
            kwargs["host_config"] = JsonHostConfig(config.host_config)
        return cls(repository, config, **kwargs)

    # -- hook entry points -------------------------------------------------

    def on_provider_call_start(
        self,
        request_id: str,
        provider: str,
        model: str,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        request_metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Hook called before every metered call. Never raises."""
        try:
            self.correlator.on_start(
                request_id, provider, model, agent_id, session_id, request_metadata
            )
        except Exception:
            logger.exception("Error in provider-call-start hook for %s", request_id)

    def on_provider_call_end(self, request_id: str, response: Any) -> Optional[UsageRecord]:
        """Hook called after every metered call. Never raises."""
        try:
            return self.record_completion(request_id, response)
        except Exception:
            logger.exception("Error in provider-call-end hook for %s", request_id)
            return None

    def on_session_end(self, session_id: str, duration: Optional[timedelta] = None) -> Optional[TierStatus]:
        """Hook called when an agent session finishes. Never raises.

        Logs the session and where today's spend stands.
        """
        try:
            daily = self.evaluator.evaluate().tiers["daily"]
            if duration is not None:
                logger.info("Session %s complete after %.0fs", session_id, duration.total_seconds())
            else:
                logger.info("Session %s complete", session_id)
            logger.info(
                "Daily spend: $%.2f / $%.2f (%d%%)", daily.used, daily.limit, daily.percent_used
            )
            return daily
        except Exception:
            logger.exception("Error in session-end hook for %s", session_id)
            return None

    def admission_allowed(self) -> bool:
        return not self.breaker.tripped

    # -- completion path ---------------------------------------------------

    def record_completion(self, request_id: str, response: Any) -> Optional[UsageRecord]:
        record = self.correlator.on_complete(request_id, response)
        if record is None:
            return None
        self.check_budgets()
        return record

    def check_budgets(self) -> BudgetEvaluation:
        """Evaluate budgets, drive the breaker and send changed-status alerts."""
        evaluation = self.evaluator.evaluate()
        decision = self.evaluator.should_trip(evaluation)

        if decision.should_trip:
            if not self.breaker.tripped:
                self._trip(decision)
        elif (
            self.config.breaker.auto_reset
            and decision.reason == "no breach"
            and self.breaker.tripped
        ):
            self.breaker.reset(manual=False)

        self._alert_on_changes(evaluation)
        return evaluation

    def _trip(self, decision: TripDecision) -> BreakerResult:
        result = self.breaker.trip(decision.reason, decision.tier, decision.amount_exceeded)
        if result.transitioned:
            now = self.clock()
            self.alerts.dispatch(
                AlertType.CIRCUIT_BREAKER_TRIP,
                context=AlertContext(
                    tier=decision.tier,
                    reason=decision.reason,
                    amount_exceeded=decision.amount_exceeded,
                    recent_expensive=self.repository.get_recent_usage(
                        now - RECENT_EXPENSIVE_WINDOW, limit=5, most_expensive_first=True
                    ),
                ),
            )
        return result

    def _alert_on_changes(self, evaluation: BudgetEvaluation) -> None:
        for tier, status in evaluation.tiers.items():
            with self._status_lock:
                previous = self._last_status.get(tier, Classification.SAFE)
                self._last_status[tier] = status.classification
            if status.classification == previous or not status.should_alert:
                continue

            alert_type = alert_type_for(status.classification)
            self.alerts.dispatch(alert_type, status, self._window_context(tier))

    def _window_context(self, tier: str) -> AlertContext:
        since = self.clock() - TIER_WINDOWS[tier]
        return AlertContext(
            tier=tier,
            providers=self.repository.get_provider_breakdown(since, limit=3),
            top_agents=self.repository.get_top_agents(since, 3),
        )

    # -- status and reports ------------------------------------------------

    def get_status(self) -> GovernorStatus:
        return GovernorStatus(
            summary=self.evaluator.status_summary(),
            breaker=self.breaker.status(),
        )

    def get_report(self, days: int = 7, wallet: Optional[str] = None) -> UsageReport:
        """Usage report for the last ``days`` days.

        Raises:
            LicenseRequiredError: If the window exceeds the free history
                window and the wallet holds no valid license
            ValueError: If days is not positive
        """
        if days <= 0:
            raise ValueError("days must be > 0")
        if days > self.config.payments.free_history_days:
            if not wallet or not self.licenses.has_valid_license(wallet).valid:
                raise LicenseRequiredError(
                    f"Pro license required for history beyond "
                    f"{self.config.payments.free_history_days} days"
                )

        since = self.clock() - timedelta(days=days)
        total_cost, request_count = self.repository.get_window_totals(since)
        return UsageReport(
            days=days,
            total_cost=total_cost,
            request_count=request_count,
            providers=self.repository.get_provider_breakdown(since),
            top_agents=self.repository.get_top_agents(since, 10),
            timeline=self.repository.get_recent_usage(since),
        )

    def report(self, days: int = 7, wallet: Optional[str] = None) -> Dict[str, Any]:
        try:
            return {"success": True, "report": self.get_report(days, wallet).to_dict()}
        except (LicenseRequiredError, ValueError) as e:
            return {"success": False, "error": str(e)}

    def send_daily_summary(self):
        since = self.clock() - TIER_WINDOWS["daily"]
        total_cost, request_count = self.repository.get_window_totals(since)
        return self.alerts.dispatch(
            AlertType.DAILY_SUMMARY,
            context=AlertContext(
                tier="daily",
                total_cost=total_cost,
                request_count=request_count,
                providers=self.repository.get_provider_breakdown(since),
            ),
        )

    # -- operator actions --------------------------------------------------

    def reset_breaker(self) -> BreakerResult:
        return self.breaker.reset(manual=True)

    def update_budget(self, **changes: Any) -> BudgetConfig:
        """Apply partial budget changes; effective on the next evaluation."""
        budget = replace(self.repository.get_budget(), **changes)
        self.repository.update_budget(budget)
        return budget

    # -- payment surface ---------------------------------------------------

    def create_payment_request(self, wallet: str, tier: str = "pro_monthly") -> Dict[str, Any]:
        try:
            descriptor = self.licenses.create_request(wallet, tier)
        except PaymentError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, **descriptor.to_dict()}

    def verify_payment(self, request_id: str, settlement_ref: str, wallet: str) -> Dict[str, Any]:
        try:
            result = self.licenses.verify(request_id, settlement_ref, wallet)
        except PaymentError as e:
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "tier": result.tier,
            "valid_until": result.valid_until.isoformat() if result.valid_until else None,
        }

    def check_license(self, wallet: str) -> LicenseStatus:
        return self.licenses.has_valid_license(wallet)
