"""
Alert dispatching.

Formats budget and breaker notifications and fans them out to every
enabled alert channel. Repeats of the same (alert type, tier) key are
suppressed for a cooldown period. The cooldown cache lives in memory only
and is lost on restart.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import requests
from rich.console import Console

from .monitor import Classification, TierStatus
from cost_governor.storage.models import AlertChannel, CostBreakdown, UsageRecord
from cost_governor.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=1)


class AlertType(Enum):
    BUDGET_WARNING = "budget_warning"
    BUDGET_CRITICAL = "budget_critical"
    BUDGET_EXCEEDED = "budget_exceeded"
    CIRCUIT_BREAKER_TRIP = "circuit_breaker_trip"
    DAILY_SUMMARY = "daily_summary"


_ALERT_FOR_CLASSIFICATION = {
    Classification.WARNING: AlertType.BUDGET_WARNING,
    Classification.CRITICAL: AlertType.BUDGET_CRITICAL,
    Classification.EXCEEDED: AlertType.BUDGET_EXCEEDED,
}

# Embed colors for rich channels
_ALERT_COLORS = {
    AlertType.BUDGET_WARNING: 0xFFA500,
    AlertType.BUDGET_CRITICAL: 0xFF4500,
    AlertType.BUDGET_EXCEEDED: 0xFF0000,
    AlertType.CIRCUIT_BREAKER_TRIP: 0xFF0000,
    AlertType.DAILY_SUMMARY: 0x00FF00,
}


def alert_type_for(classification: Classification) -> Optional[AlertType]:
    return _ALERT_FOR_CLASSIFICATION.get(classification)


class AlertDeliveryError(Exception):
    """Raised by a transport when a channel rejects or cannot take a message."""


@dataclass
class AlertContext:
    """Ledger context attached to an alert."""
    providers: List[CostBreakdown] = field(default_factory=list)
    top_agents: List[CostBreakdown] = field(default_factory=list)
    recent_expensive: List[UsageRecord] = field(default_factory=list)
    tier: Optional[str] = None
    reason: Optional[str] = None
    amount_exceeded: Optional[float] = None
    total_cost: Optional[float] = None
    request_count: Optional[int] = None


@dataclass(frozen=True)
class AlertMessage:
    alert_type: AlertType
    title: str
    body: str
    color: int
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.value,
            "title": self.title,
            "message": self.body,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    error: Optional[str] = None
    channel_id: Optional[int] = None


@dataclass
class DispatchResult:
    sent: bool
    reason: Optional[str] = None
    results: List[ChannelResult] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


def format_title(alert_type: AlertType, tier_status: Optional[TierStatus]) -> str:
    percent = f" ({tier_status.percent_used}%)" if tier_status else ""
    return {
        AlertType.BUDGET_WARNING: f"Budget Warning{percent}",
        AlertType.BUDGET_CRITICAL: f"Critical Budget Alert{percent}",
        AlertType.BUDGET_EXCEEDED: "Budget Exceeded",
        AlertType.CIRCUIT_BREAKER_TRIP: "Circuit Breaker Activated",
        AlertType.DAILY_SUMMARY: "Daily Cost Summary",
    }[alert_type]


def format_budget_alert(status: TierStatus, context: AlertContext) -> str:
    lines = [
        "Cost Governor Budget Alert",
        "",
        f"You've used {status.percent_used}% of your {status.tier} budget "
        f"({_money(status.used)} / {_money(status.limit)})",
    ]
    if status.classification == Classification.EXCEEDED:
        lines += ["", f"Budget exceeded by {_money(status.used - status.limit)}"]

    if context.providers:
        lines += ["", "Current usage:"]
        for p in context.providers[:3]:
            share = (p.total_cost / status.used * 100) if status.used else 0
            lines.append(f"  - {p.key} {p.model}: {_money(p.total_cost)} ({share:.0f}%)")

    if context.top_agents:
        lines += ["", "Top agents:"]
        for agent in context.top_agents[:3]:
            lines.append(f"  - {agent.key}: {_money(agent.total_cost)}")
    return "\n".join(lines)


def format_breaker_alert(context: AlertContext) -> str:
    lines = [
        "Cost Governor Circuit Breaker Activated",
        "",
        context.reason or "Budget exceeded",
    ]
    if context.amount_exceeded is not None:
        lines.append(f"Exceeded by {_money(context.amount_exceeded)}")
    lines += [
        "",
        "Agents have been paused to prevent further charges.",
        "To resume, review usage and run: cost-governor reset",
    ]
    if context.recent_expensive:
        lines += ["", "Recent expensive operations:"]
        for op in context.recent_expensive:
            lines.append(
                f"  - {op.agent_id or 'unknown'} {op.provider}/{op.model} "
                f"({op.timestamp:%Y-%m-%d %H:%M}): {_money(op.cost)}"
            )
    return "\n".join(lines)


def format_daily_summary(context: AlertContext) -> str:
    total = context.total_cost or 0.0
    count = context.request_count or 0
    average = total / count if count else 0.0
    lines = [
        "Cost Governor Daily Cost Summary",
        "",
        f"Total spent today: {_money(total)}",
        f"Requests: {count}",
        f"Average per request: ${average:.4f}",
    ]
    if context.providers:
        lines += ["", "By provider:"]
        for p in context.providers:
            lines.append(
                f"  - {p.key} {p.model}: {_money(p.total_cost)} ({p.request_count} requests)"
            )
    return "\n".join(lines)


def format_alert(
    alert_type: AlertType,
    tier_status: Optional[TierStatus],
    context: AlertContext,
    timestamp: datetime,
) -> AlertMessage:
    if alert_type == AlertType.CIRCUIT_BREAKER_TRIP:
        body = format_breaker_alert(context)
    elif alert_type == AlertType.DAILY_SUMMARY:
        body = format_daily_summary(context)
    elif tier_status is not None:
        body = format_budget_alert(tier_status, context)
    else:
        raise ValueError(f"{alert_type.value} alerts require a tier status")

    data: Dict[str, Any] = {"tier": context.tier}
    if tier_status is not None:
        data.update(
            tier=tier_status.tier,
            status=tier_status.classification.value,
            percent_used=tier_status.percent_used,
            used=tier_status.used,
            limit=tier_status.limit,
        )
    if context.amount_exceeded is not None:
        data["amount_exceeded"] = context.amount_exceeded

    return AlertMessage(
        alert_type=alert_type,
        title=format_title(alert_type, tier_status),
        body=body,
        color=_ALERT_COLORS.get(alert_type, 0x808080),
        timestamp=timestamp,
        data=data,
    )


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class AlertTransport(Protocol):
    def send(self, message: AlertMessage, config: Dict[str, Any]) -> None:
        ...


class ConsoleTransport:
    """Prints plain-text alerts to the terminal."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def send(self, message: AlertMessage, config: Dict[str, Any]) -> None:
        self.console.rule(message.title)
        self.console.print(message.body, markup=False, highlight=False)
        self.console.rule()


class WebhookTransport:
    """POSTs the alert as JSON to an arbitrary endpoint."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10):
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, message: AlertMessage, config: Dict[str, Any]) -> None:
        url = config.get("url")
        if not url:
            raise AlertDeliveryError("Webhook URL not configured")
        headers = {"Content-Type": "application/json"}
        headers.update(config.get("headers") or {})
        self._post(url, message.to_payload(), headers)

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> None:
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise AlertDeliveryError(f"Webhook request failed: {e}") from e
        if not resp.ok:
            raise AlertDeliveryError(f"Webhook returned {resp.status_code}")


class DiscordTransport(WebhookTransport):
    """Sends a titled, colored embed to a Discord webhook."""

    def send(self, message: AlertMessage, config: Dict[str, Any]) -> None:
        url = config.get("webhook_url") or config.get("url")
        if not url:
            raise AlertDeliveryError("Discord webhook URL not configured")
        embed = {
            "title": message.title,
            "description": message.body[:4000],
            "color": message.color,
            "timestamp": message.timestamp.isoformat(),
        }
        self._post(url, {"username": "Cost Governor", "embeds": [embed]},
                   dict(config.get("headers") or {}))


def default_transports() -> Dict[str, AlertTransport]:
    return {
        "console": ConsoleTransport(),
        "webhook": WebhookTransport(),
        "discord": DiscordTransport(),
    }


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class AlertDispatcher:
    """Cooldown-gated fan-out of alerts to the registered channels."""

    def __init__(
        self,
        repository: LedgerRepository,
        transports: Optional[Dict[str, AlertTransport]] = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.transports = transports if transports is not None else default_transports()
        self.cooldown = cooldown
        self.clock = clock
        self._last_sent: Dict[Tuple[str, Optional[str]], datetime] = {}
        self._lock = threading.Lock()

    def dispatch(
        self,
        alert_type: AlertType,
        tier_status: Optional[TierStatus] = None,
        context: Optional[AlertContext] = None,
    ) -> DispatchResult:
        context = context or AlertContext()
        tier = tier_status.tier if tier_status else context.tier
        key = (alert_type.value, tier)
        now = self.clock()

        with self._lock:
            last = self._last_sent.get(key)
            if last is not None and now - last < self.cooldown:
                logger.info("Alert on cooldown: %s-%s", alert_type.value, tier)
                return DispatchResult(sent=False, reason="cooldown")
            self._last_sent[key] = now

        message = format_alert(alert_type, tier_status, context, now)
        results = [self._deliver(channel, message) for channel in self.repository.get_alert_channels()]
        return DispatchResult(sent=True, results=results)

    def reset_cooldowns(self) -> None:
        with self._lock:
            self._last_sent.clear()

    def _deliver(self, channel: AlertChannel, message: AlertMessage) -> ChannelResult:
        transport = self.transports.get(channel.type)
        if transport is None:
            logger.warning("Unknown alert channel: %s", channel.type)
            return ChannelResult(channel.type, False, "Unknown channel type", channel.id)
        try:
            transport.send(message, channel.config)
        except Exception as e:
            # One broken channel must not stop delivery to the others
            logger.error("Error sending alert via %s: %s", channel.type, e)
            return ChannelResult(channel.type, False, str(e), channel.id)
        return ChannelResult(channel.type, True, None, channel.id)
