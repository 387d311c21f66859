"""
Data models for storage layer.

Defines the ledger entities persisted by the repository.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one metered provider call.

    Append-only rows that form the auditable ledger of agent spending.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    task_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.cost < 0:
            raise ValueError("cost cannot be negative")


@dataclass(frozen=True)
class BudgetConfig:
    """Budget limits for every tier, stored as a singleton row."""
    daily_limit: float = 10.0
    weekly_limit: float = 50.0
    monthly_limit: float = 200.0
    alert_threshold_percent: int = 75
    circuit_breaker_enabled: bool = True

    def __post_init__(self):
        """Validate budget values."""
        for name in ("daily_limit", "weekly_limit", "monthly_limit"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if not 0 < self.alert_threshold_percent <= 100:
            raise ValueError("alert_threshold_percent must be between 1 and 100")

    def limit_for(self, tier: str) -> float:
        return getattr(self, f"{tier}_limit")


class BreakerEventType(Enum):
    TRIP = "trip"
    RESET = "reset"


@dataclass(frozen=True)
class BreakerEvent:
    """Immutable entry of the circuit breaker log."""
    timestamp: datetime
    event_type: BreakerEventType
    reason: str
    tier: Optional[str] = None
    amount_exceeded: Optional[float] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class AlertChannel:
    """A registered notification target."""
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    id: Optional[int] = None


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a provider model."""
    provider: str
    model: str
    prompt_cost_per_1k: float  # Cost per 1K prompt tokens
    completion_cost_per_1k: float  # Cost per 1K completion tokens


class PaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PaymentRequest:
    request_id: str
    wallet: str
    amount: float
    token: str
    tier: str
    status: PaymentStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    settlement_ref: Optional[str] = None


@dataclass(frozen=True)
class PaymentTransaction:
    wallet: str
    settlement_ref: str
    amount: float
    token: str
    chain: str
    timestamp: datetime
    tier_granted: str
    duration_months: int
    verified: bool = True


@dataclass(frozen=True)
class AgentLicense:
    """Time-boxed entitlement held by a wallet.

    ``paid_until`` is always ``period_start`` plus ``months_purchased``
    calendar months, so stacked extensions never lose days to month-end
    clamping.
    """
    wallet: str
    tier: str
    paid_until: Optional[datetime]
    last_payment_ref: Optional[str] = None
    last_payment_amount: Optional[float] = None
    last_payment_token: Optional[str] = None
    period_start: Optional[datetime] = None
    months_purchased: int = 0


@dataclass(frozen=True)
class CostBreakdown:
    """Aggregated spend for one group (provider/model or agent) in a window."""
    key: str
    request_count: int
    total_tokens: int
    total_cost: float
    model: Optional[str] = None
