"""
Budget evaluation.

Computes rolling-window spend for every budget tier and classifies it
against the configured limits.

Classification precedence (first match wins):
1. exceeded - used >= limit
2. critical - used >= 90% of limit
3. warning  - used >= alert threshold percent of limit
4. safe
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from cost_governor.storage.models import BudgetConfig, CostBreakdown
from cost_governor.storage.repository import LedgerRepository

CRITICAL_PERCENT = 90


class Classification(Enum):
    """Budget classifications in order of severity."""
    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"

    @property
    def severity(self) -> int:
        return list(Classification).index(self)


# Fixed evaluation order; the breaker reports the first exceeded tier.
TIERS: Tuple[Tuple[str, timedelta], ...] = (
    ("daily", timedelta(days=1)),
    ("weekly", timedelta(days=7)),
    ("monthly", timedelta(days=30)),
)
TIER_WINDOWS: Dict[str, timedelta] = dict(TIERS)


@dataclass(frozen=True)
class TierStatus:
    """Derived budget status of one tier."""
    tier: str
    limit: float
    used: float
    remaining: float
    percent_used: int
    request_count: int
    classification: Classification

    @property
    def should_alert(self) -> bool:
        return self.classification != Classification.SAFE

    @property
    def should_break(self) -> bool:
        return self.classification == Classification.EXCEEDED


@dataclass(frozen=True)
class BudgetEvaluation:
    tiers: Dict[str, TierStatus]
    circuit_breaker_enabled: bool


@dataclass(frozen=True)
class TripDecision:
    should_trip: bool
    reason: str
    tier: Optional[str] = None
    amount_exceeded: Optional[float] = None


@dataclass
class StatusSummary:
    evaluation: BudgetEvaluation
    providers: List[CostBreakdown] = field(default_factory=list)
    top_agents: List[CostBreakdown] = field(default_factory=list)
    timestamp: Optional[datetime] = None


def classify(used: float, limit: float, alert_threshold_percent: int) -> Classification:
    if used >= limit:
        return Classification.EXCEEDED
    if used * 100 >= limit * CRITICAL_PERCENT:
        return Classification.CRITICAL
    if used * 100 >= limit * alert_threshold_percent:
        return Classification.WARNING
    return Classification.SAFE


def _round_percent(used: float, limit: float) -> int:
    percent = Decimal(str(used)) / Decimal(str(limit)) * 100
    return int(percent.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BudgetEvaluator:
    """Evaluates ledger spend against the budget singleton.

    The budget row is read on every call so configuration updates take
    effect on the next evaluation.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.clock = clock

    def evaluate(self) -> BudgetEvaluation:
        budget = self.repository.get_budget()
        now = self.clock()
        tiers = {
            name: self._evaluate_tier(name, now - window, budget)
            for name, window in TIERS
        }
        return BudgetEvaluation(
            tiers=tiers,
            circuit_breaker_enabled=budget.circuit_breaker_enabled,
        )

    def _evaluate_tier(self, tier: str, since: datetime, budget: BudgetConfig) -> TierStatus:
        limit = budget.limit_for(tier)
        used, request_count = self.repository.get_window_totals(since)
        return TierStatus(
            tier=tier,
            limit=limit,
            used=used,
            remaining=max(0.0, limit - used),
            percent_used=_round_percent(used, limit),
            request_count=request_count,
            classification=classify(used, limit, budget.alert_threshold_percent),
        )

    def should_trip(self, evaluation: Optional[BudgetEvaluation] = None) -> TripDecision:
        """Decide whether the breaker should trip.

        Args:
            evaluation: A fresh evaluation to reuse; computed if omitted

        Returns:
            TripDecision naming the first exceeded tier in tier order
        """
        evaluation = evaluation or self.evaluate()
        if not evaluation.circuit_breaker_enabled:
            return TripDecision(should_trip=False, reason="disabled")

        for name, _ in TIERS:
            status = evaluation.tiers[name]
            if status.should_break:
                return TripDecision(
                    should_trip=True,
                    reason=f"{name} budget exceeded",
                    tier=name,
                    amount_exceeded=status.used - status.limit,
                )
        return TripDecision(should_trip=False, reason="no breach")

    def status_summary(self, top: int = 5) -> StatusSummary:
        now = self.clock()
        since = now - TIER_WINDOWS["daily"]
        return StatusSummary(
            evaluation=self.evaluate(),
            providers=self.repository.get_provider_breakdown(since),
            top_agents=self.repository.get_top_agents(since, top),
            timestamp=now,
        )
