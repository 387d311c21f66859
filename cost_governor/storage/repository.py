"""
Repository pattern for data access.

Handles every ledger table: usage, budgets, pricing, breaker events,
alert channels and the payment/license tables. Pure data access, no policy.
"""

import json
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AgentLicense,
    AlertChannel,
    BreakerEvent,
    BreakerEventType,
    BudgetConfig,
    CostBreakdown,
    ModelPricing,
    PaymentRequest,
    PaymentStatus,
    PaymentTransaction,
    UsageRecord,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS usage (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        agent_id TEXT,
        session_id TEXT,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        cost REAL NOT NULL DEFAULT 0,
        task_type TEXT,
        metadata TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS budgets (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        daily_limit REAL NOT NULL,
        weekly_limit REAL NOT NULL,
        monthly_limit REAL NOT NULL,
        alert_threshold_percent INTEGER NOT NULL,
        circuit_breaker_enabled INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pricing (
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        prompt_cost_per_1k REAL NOT NULL,
        completion_cost_per_1k REAL NOT NULL,
        last_updated TEXT,
        PRIMARY KEY (provider, model)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS breaker_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        event_type TEXT NOT NULL,
        reason TEXT,
        tier TEXT,
        amount_exceeded REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_channels (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        config TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT UNIQUE NOT NULL,
        wallet TEXT NOT NULL,
        amount REAL NOT NULL,
        token TEXT NOT NULL,
        tier TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        completed_at TEXT,
        settlement_ref TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        wallet TEXT NOT NULL,
        settlement_ref TEXT UNIQUE NOT NULL,
        amount REAL NOT NULL,
        token TEXT NOT NULL,
        chain TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        verified INTEGER NOT NULL DEFAULT 0,
        tier_granted TEXT,
        duration_months INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_licenses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        wallet TEXT UNIQUE NOT NULL,
        tier TEXT NOT NULL DEFAULT 'free',
        paid_until TEXT,
        last_payment_ref TEXT,
        last_payment_amount REAL,
        last_payment_token TEXT,
        period_start TEXT,
        months_purchased INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_usage_provider ON usage(provider)",
    "CREATE INDEX IF NOT EXISTS idx_usage_agent ON usage(agent_id)",
    "CREATE INDEX IF NOT EXISTS idx_breaker_timestamp ON breaker_events(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_payment_requests_wallet ON payment_requests(wallet)",
    "CREATE INDEX IF NOT EXISTS idx_payment_tx_wallet ON payment_transactions(wallet)",
    "CREATE INDEX IF NOT EXISTS idx_agent_licenses_paid_until ON agent_licenses(paid_until)",
)

USAGE_COLUMNS = (
    "timestamp, provider, model, agent_id, session_id, prompt_tokens, "
    "completion_tokens, total_tokens, cost, task_type, metadata"
)

LICENSE_COLUMNS = (
    "wallet, tier, paid_until, last_payment_ref, last_payment_amount, "
    "last_payment_token, period_start, months_purchased"
)

# Computes the new license row from the current one (None if the wallet has none)
LicenseGrant = Callable[[Optional[AgentLicense]], AgentLicense]


class DuplicateSettlementError(Exception):
    """Raised when a settlement reference is already recorded for another payment."""


def _ts(value: datetime) -> str:
    # Fixed width keeps lexicographic order equal to chronological order
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def initialize_schema(
    db_path: str = DEFAULT_DB_PATH,
    seed_pricing: Iterable[ModelPricing] = (),
    budget: Optional[BudgetConfig] = None,
) -> None:
    """Create every ledger table if it doesn't exist.

    The usage and breaker_events tables are append-only: no UPDATE or DELETE
    is ever issued against them by the governor.

    Args:
        db_path: Path to SQLite database file
        seed_pricing: Default pricing rows, inserted only where missing
        budget: Initial budget singleton, inserted only where missing
    """
    budget = budget or BudgetConfig()
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.execute(
            """
            INSERT OR IGNORE INTO budgets
            (id, daily_limit, weekly_limit, monthly_limit,
             alert_threshold_percent, circuit_breaker_enabled)
            VALUES (1, ?, ?, ?, ?, ?)
            """,
            (
                budget.daily_limit,
                budget.weekly_limit,
                budget.monthly_limit,
                budget.alert_threshold_percent,
                int(budget.circuit_breaker_enabled),
            ),
        )
        for pricing in seed_pricing:
            conn.execute(
                """
                INSERT OR IGNORE INTO pricing
                (provider, model, prompt_cost_per_1k, completion_cost_per_1k, last_updated)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    pricing.provider,
                    pricing.model,
                    pricing.prompt_cost_per_1k,
                    pricing.completion_cost_per_1k,
                    _ts(datetime.now()),
                ),
            )
        conn.commit()
    finally:
        conn.close()


class LedgerRepository:
    """Repository for every table of the cost ledger.

    Each method opens its own connection and commits before returning, so a
    write is durable by the time the caller acts on it.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # -- usage -----------------------------------------------------------

    def insert_usage(self, record: UsageRecord) -> None:
        """Append a single usage record to the ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO usage ({USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    _ts(record.timestamp),
                    record.provider,
                    record.model,
                    record.agent_id,
                    record.session_id,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.total_tokens,
                    record.cost,
                    record.task_type,
                    json.dumps(record.metadata, default=str) if record.metadata else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_window_totals(self, since: datetime) -> Tuple[float, int]:
        """Return (total cost, request count) for records at or after ``since``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(cost), 0), COUNT(*)
                FROM usage
                WHERE timestamp >= ?
                """,
                (_ts(since),),
            ).fetchone()
            return float(row[0]), int(row[1])
        finally:
            conn.close()

    def get_provider_breakdown(
        self, since: datetime, limit: Optional[int] = None
    ) -> List[CostBreakdown]:
        """Spend grouped by provider/model, most expensive first."""
        query = """
            SELECT provider, model, COUNT(*), COALESCE(SUM(total_tokens), 0),
                   COALESCE(SUM(cost), 0)
            FROM usage
            WHERE timestamp >= ?
            GROUP BY provider, model
            ORDER BY SUM(cost) DESC
        """
        params: List[Any] = [_ts(since)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        conn = get_connection(self.db_path)
        try:
            return [
                CostBreakdown(
                    key=row[0],
                    model=row[1],
                    request_count=row[2],
                    total_tokens=row[3],
                    total_cost=float(row[4]),
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def get_top_agents(self, since: datetime, limit: int = 10) -> List[CostBreakdown]:
        """Spend grouped by agent identifier, most expensive first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT agent_id, COUNT(*), COALESCE(SUM(total_tokens), 0),
                       COALESCE(SUM(cost), 0)
                FROM usage
                WHERE timestamp >= ? AND agent_id IS NOT NULL
                GROUP BY agent_id
                ORDER BY SUM(cost) DESC
                LIMIT ?
                """,
                (_ts(since), limit),
            ).fetchall()
            return [
                CostBreakdown(
                    key=row[0],
                    request_count=row[1],
                    total_tokens=row[2],
                    total_cost=float(row[3]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def get_recent_usage(
        self,
        since: datetime,
        limit: Optional[int] = None,
        most_expensive_first: bool = False,
    ) -> List[UsageRecord]:
        """Get usage records in a window.

        Args:
            since: Inclusive lower bound of the window
            limit: Maximum number of records to return
            most_expensive_first: Order by cost instead of recency

        Returns:
            List of usage records
        """
        order = "cost DESC, timestamp DESC" if most_expensive_first else "timestamp DESC"
        query = f"SELECT {USAGE_COLUMNS} FROM usage WHERE timestamp >= ? ORDER BY {order}"
        params: List[Any] = [_ts(since)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = get_connection(self.db_path)
        try:
            records = []
            for row in conn.execute(query, params).fetchall():
                records.append(UsageRecord(
                    timestamp=datetime.fromisoformat(row[0]),
                    provider=row[1],
                    model=row[2],
                    agent_id=row[3],
                    session_id=row[4],
                    prompt_tokens=row[5],
                    completion_tokens=row[6],
                    total_tokens=row[7],
                    cost=row[8],
                    task_type=row[9],
                    metadata=json.loads(row[10]) if row[10] else {},
                ))
            return records
        finally:
            conn.close()

    # -- budget ----------------------------------------------------------

    def get_budget(self) -> BudgetConfig:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT daily_limit, weekly_limit, monthly_limit,
                       alert_threshold_percent, circuit_breaker_enabled
                FROM budgets WHERE id = 1
                """
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return BudgetConfig()
        return BudgetConfig(
            daily_limit=row[0],
            weekly_limit=row[1],
            monthly_limit=row[2],
            alert_threshold_percent=row[3],
            circuit_breaker_enabled=bool(row[4]),
        )

    def update_budget(self, budget: BudgetConfig) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO budgets
                (id, daily_limit, weekly_limit, monthly_limit,
                 alert_threshold_percent, circuit_breaker_enabled)
                VALUES (1, ?, ?, ?, ?, ?)
                """,
                (
                    budget.daily_limit,
                    budget.weekly_limit,
                    budget.monthly_limit,
                    budget.alert_threshold_percent,
                    int(budget.circuit_breaker_enabled),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    # -- pricing ---------------------------------------------------------

    def get_pricing(self, provider: str, model: str) -> Optional[ModelPricing]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT provider, model, prompt_cost_per_1k, completion_cost_per_1k
                FROM pricing WHERE provider = ? AND model = ?
                """,
                (provider, model),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return ModelPricing(row[0], row[1], row[2], row[3])

    def list_pricing(self) -> List[ModelPricing]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT provider, model, prompt_cost_per_1k, completion_cost_per_1k
                FROM pricing ORDER BY provider, model
                """
            ).fetchall()
            return [ModelPricing(*row) for row in rows]
        finally:
            conn.close()

    def upsert_pricing(self, pricing: ModelPricing) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO pricing
                (provider, model, prompt_cost_per_1k, completion_cost_per_1k, last_updated)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    pricing.provider,
                    pricing.model,
                    pricing.prompt_cost_per_1k,
                    pricing.completion_cost_per_1k,
                    _ts(datetime.now()),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    # -- breaker events --------------------------------------------------

    def insert_breaker_event(self, event: BreakerEvent) -> BreakerEvent:
        """Append a breaker event and return it with its assigned id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO breaker_events (timestamp, event_type, reason, tier, amount_exceeded)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    _ts(event.timestamp),
                    event.event_type.value,
                    event.reason,
                    event.tier,
                    event.amount_exceeded,
                ),
            )
            conn.commit()
            event_id = cursor.lastrowid
        finally:
            conn.close()
        return BreakerEvent(
            timestamp=event.timestamp,
            event_type=event.event_type,
            reason=event.reason,
            tier=event.tier,
            amount_exceeded=event.amount_exceeded,
            id=event_id,
        )

    def get_last_breaker_event(self) -> Optional[BreakerEvent]:
        """Read only the tail of the breaker log."""
        events = self._select_breaker_events("ORDER BY id DESC LIMIT 1", ())
        return events[0] if events else None

    def get_breaker_events(self, since: datetime) -> List[BreakerEvent]:
        return self._select_breaker_events(
            "WHERE timestamp >= ? ORDER BY id DESC", (_ts(since),)
        )

    def _select_breaker_events(self, clause: str, params: tuple) -> List[BreakerEvent]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT id, timestamp, event_type, reason, tier, amount_exceeded "
                f"FROM breaker_events {clause}",
                params,
            ).fetchall()
        finally:
            conn.close()
        return [
            BreakerEvent(
                id=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                event_type=BreakerEventType(row[2]),
                reason=row[3],
                tier=row[4],
                amount_exceeded=row[5],
            )
            for row in rows
        ]

    # -- alert channels --------------------------------------------------

    def add_alert_channel(
        self, channel_type: str, config: Dict[str, Any], enabled: bool = True
    ) -> AlertChannel:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO alert_channels (type, config, enabled) VALUES (?, ?, ?)",
                (channel_type, json.dumps(config), int(enabled)),
            )
            conn.commit()
            channel_id = cursor.lastrowid
        finally:
            conn.close()
        return AlertChannel(type=channel_type, config=config, enabled=enabled, id=channel_id)

    def get_alert_channels(self, enabled_only: bool = True) -> List[AlertChannel]:
        query = "SELECT id, type, config, enabled FROM alert_channels"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY id"
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query).fetchall()
        finally:
            conn.close()
        return [
            AlertChannel(id=row[0], type=row[1], config=json.loads(row[2]), enabled=bool(row[3]))
            for row in rows
        ]

    def set_alert_channel_enabled(self, channel_id: int, enabled: bool) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE alert_channels SET enabled = ? WHERE id = ?",
                (int(enabled), channel_id),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    # -- payments and licenses -------------------------------------------

    def insert_payment_request(self, request: PaymentRequest) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO payment_requests
                (request_id, wallet, amount, token, tier, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.wallet,
                    request.amount,
                    request.token,
                    request.tier,
                    request.status.value,
                    _ts(request.created_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_payment_request(self, request_id: str) -> Optional[PaymentRequest]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT request_id, wallet, amount, token, tier, status,
                       created_at, completed_at, settlement_ref
                FROM payment_requests WHERE request_id = ?
                """,
                (request_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return PaymentRequest(
            request_id=row[0],
            wallet=row[1],
            amount=row[2],
            token=row[3],
            tier=row[4],
            status=PaymentStatus(row[5]),
            created_at=datetime.fromisoformat(row[6]),
            completed_at=_parse_ts(row[7]),
            settlement_ref=row[8],
        )

    def settlement_ref_exists(self, settlement_ref: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM payment_transactions WHERE settlement_ref = ?",
                (settlement_ref,),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def complete_payment(
        self,
        request_id: str,
        transaction: PaymentTransaction,
        completed_at: datetime,
        grant: LicenseGrant,
    ) -> Optional[AgentLicense]:
        """Complete a pending request, record its transaction and grant its license.

        All three writes share one transaction: either the request is
        completed with its transaction and license, or nothing changes. The
        status guard in the UPDATE makes the pending -> completed transition
        happen at most once even under concurrent verification, and the
        license row is read under the same write lock so concurrent grants
        for one wallet cannot overwrite each other.

        Args:
            request_id: Payment request to complete
            transaction: Transaction to record
            completed_at: Completion timestamp
            grant: Computes the new license from the wallet's current one

        Returns:
            The granted license, or None if the request was no longer pending

        Raises:
            DuplicateSettlementError: If the settlement reference was
                recorded by another payment
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE payment_requests
                SET status = ?, completed_at = ?, settlement_ref = ?
                WHERE request_id = ? AND status = ?
                """,
                (
                    PaymentStatus.COMPLETED.value,
                    _ts(completed_at),
                    transaction.settlement_ref,
                    request_id,
                    PaymentStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            try:
                conn.execute(
                    """
                    INSERT INTO payment_transactions
                    (wallet, settlement_ref, amount, token, chain, timestamp,
                     verified, tier_granted, duration_months)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction.wallet,
                        transaction.settlement_ref,
                        transaction.amount,
                        transaction.token,
                        transaction.chain,
                        _ts(transaction.timestamp),
                        int(transaction.verified),
                        transaction.tier_granted,
                        transaction.duration_months,
                    ),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise DuplicateSettlementError(
                    f"Settlement reference {transaction.settlement_ref} already recorded"
                ) from e
            agent_license = grant(self._select_license(conn, transaction.wallet))
            self._write_license(conn, agent_license, completed_at)
            conn.commit()
            return agent_license
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_payment_transactions(self, wallet: Optional[str] = None) -> List[PaymentTransaction]:
        query = """
            SELECT wallet, settlement_ref, amount, token, chain, timestamp,
                   tier_granted, duration_months, verified
            FROM payment_transactions
        """
        params: List[Any] = []
        if wallet:
            query += " WHERE wallet = ?"
            params.append(wallet)
        query += " ORDER BY id"
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [
            PaymentTransaction(
                wallet=row[0],
                settlement_ref=row[1],
                amount=row[2],
                token=row[3],
                chain=row[4],
                timestamp=datetime.fromisoformat(row[5]),
                tier_granted=row[6],
                duration_months=row[7],
                verified=bool(row[8]),
            )
            for row in rows
        ]

    def get_license(self, wallet: str) -> Optional[AgentLicense]:
        conn = get_connection(self.db_path)
        try:
            return self._select_license(conn, wallet)
        finally:
            conn.close()

    def upsert_license(self, agent_license: AgentLicense, now: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            self._write_license(conn, agent_license, now)
            conn.commit()
        finally:
            conn.close()

    def extend_license(self, wallet: str, grant: LicenseGrant, now: datetime) -> AgentLicense:
        """Read, recompute and write a wallet's license under one write lock."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            agent_license = grant(self._select_license(conn, wallet))
            self._write_license(conn, agent_license, now)
            conn.commit()
            return agent_license
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _select_license(self, conn: sqlite3.Connection, wallet: str) -> Optional[AgentLicense]:
        row = conn.execute(
            f"SELECT {LICENSE_COLUMNS} FROM agent_licenses WHERE wallet = ?",
            (wallet,),
        ).fetchone()
        if row is None:
            return None
        return AgentLicense(
            wallet=row[0],
            tier=row[1],
            paid_until=_parse_ts(row[2]),
            last_payment_ref=row[3],
            last_payment_amount=row[4],
            last_payment_token=row[5],
            period_start=_parse_ts(row[6]),
            months_purchased=row[7],
        )

    def _write_license(self, conn: sqlite3.Connection, agent_license: AgentLicense, now: datetime) -> None:
        conn.execute(
            f"""
            INSERT INTO agent_licenses ({LICENSE_COLUMNS}, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(wallet) DO UPDATE SET
                tier = excluded.tier,
                paid_until = excluded.paid_until,
                last_payment_ref = excluded.last_payment_ref,
                last_payment_amount = excluded.last_payment_amount,
                last_payment_token = excluded.last_payment_token,
                period_start = excluded.period_start,
                months_purchased = excluded.months_purchased,
                updated_at = excluded.updated_at
            """,
            (
                agent_license.wallet,
                agent_license.tier,
                _ts(agent_license.paid_until) if agent_license.paid_until else None,
                agent_license.last_payment_ref,
                agent_license.last_payment_amount,
                agent_license.last_payment_token,
                _ts(agent_license.period_start) if agent_license.period_start else None,
                agent_license.months_purchased,
                _ts(now),
                _ts(now),
            ),
        )

    def get_payment_stats(self, now: datetime) -> Dict[str, float]:
        conn = get_connection(self.db_path)
        try:
            totals = conn.execute(
                """
                SELECT COUNT(*), COALESCE(SUM(amount), 0), COUNT(DISTINCT wallet)
                FROM payment_transactions
                WHERE verified = 1
                """
            ).fetchone()
            active = conn.execute(
                """
                SELECT COUNT(*) FROM agent_licenses
                WHERE tier = 'pro' AND paid_until > ?
                """,
                (_ts(now),),
            ).fetchone()
        finally:
            conn.close()
        return {
            "transaction_count": totals[0],
            "total_revenue": float(totals[1]),
            "unique_payers": totals[2],
            "active_subscriptions": active[0],
        }
