"""
Plan catalog, subscription and usage ledger storage using SQLite.

Invariants enforced by the schema:
- At most one active, locally-managed (no Paddle id) subscription per user
  (partial unique index) - makes Free provisioning race-safe
- Paddle subscription ids are unique - makes webhook upserts idempotent
- Usage rows are append-only and scoped to a window by ``created_at``

Timestamps are stored as fixed-precision ISO 8601 UTC strings so that string
comparison in SQL matches chronological order.
"""

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from cachetools import TTLCache

from entitlements.models.plan import BillingInterval, Plan, PlanCreate
from entitlements.models.subscription import (
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
)
from entitlements.models.usage import USAGE_METERS, UsageRecord
from entitlements.utils.periods import parse_datetime, to_iso, utcnow

logger = logging.getLogger(__name__)


PLAN_COLUMNS = (
    "id",
    "name",
    "upload_limit_mb",
    "transcription_mins",
    "summarization_limit",
    "doc_export_limit",
    "billing_interval",
    "price",
    "paddle_price_id",
    "premium_templates",
    "archive_access",
)

SUBSCRIPTION_COLUMNS = (
    "id",
    "user_id",
    "plan_id",
    "status",
    "starts_at",
    "ends_at",
    "auto_renew",
    "cancel_at",
    "paddle_subscription_id",
    "paddle_transaction_id",
    "last_event_at",
    "created_at",
    "updated_at",
)

UPDATABLE_SUBSCRIPTION_FIELDS = frozenset(
    {
        "plan_id",
        "status",
        "starts_at",
        "ends_at",
        "auto_renew",
        "cancel_at",
        "paddle_subscription_id",
        "paddle_transaction_id",
        "last_event_at",
    }
)

USAGE_TABLES = frozenset(meter.table for meter in USAGE_METERS.values())

_SUBSCRIPTION_SELECT = ", ".join(f"s.{c}" for c in SUBSCRIPTION_COLUMNS)
_JOINED_PLAN_SELECT = ", ".join(f"p.{c} AS plan__{c}" for c in PLAN_COLUMNS)

# Latest first; rows with no timestamp sort last.
_LATEST_ACTIVE_ORDER = (
    "s.updated_at IS NULL, s.updated_at DESC, s.ends_at IS NULL, s.ends_at DESC, s.created_at DESC"
)


class StorageError(Exception):
    """Raised when the row store rejects or fails an operation."""


class DuplicateSubscriptionError(StorageError):
    """Raised when an insert violates a subscription uniqueness constraint."""


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_plan(row: sqlite3.Row, prefix: str = "") -> Plan:
    interval = row[f"{prefix}billing_interval"]
    return Plan(
        id=row[f"{prefix}id"],
        name=row[f"{prefix}name"],
        upload_limit_mb=row[f"{prefix}upload_limit_mb"],
        transcription_mins=row[f"{prefix}transcription_mins"],
        summarization_limit=row[f"{prefix}summarization_limit"],
        doc_export_limit=row[f"{prefix}doc_export_limit"],
        billing_interval=BillingInterval(interval) if interval else None,
        price=row[f"{prefix}price"],
        paddle_price_id=row[f"{prefix}paddle_price_id"],
        premium_templates=bool(row[f"{prefix}premium_templates"]),
        archive_access=bool(row[f"{prefix}archive_access"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        starts_at=parse_datetime(row["starts_at"]),
        ends_at=parse_datetime(row["ends_at"]),
        auto_renew=bool(row["auto_renew"]),
        cancel_at=parse_datetime(row["cancel_at"]),
        paddle_subscription_id=row["paddle_subscription_id"],
        paddle_transaction_id=row["paddle_transaction_id"],
        last_event_at=parse_datetime(row["last_event_at"]),
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _usage_table(table: str) -> str:
    # Table names cannot be bound as parameters
    if table not in USAGE_TABLES:
        raise ValueError(f"Unknown usage table: {table}")
    return table


class SubscriptionDatabase:
    """
    Storage for plans, subscriptions and usage ledgers.

    Plan lookups are cached in-process (TTL) since the catalog is edited
    out-of-band and read on every entitlement check. Only hits are cached so a
    plan seeded after startup becomes visible immediately.
    """

    def __init__(self, db_path: str = "./data/entitlements.db", plan_cache_ttl_seconds: int = 300):
        """
        Initialize subscription database.

        Args:
            db_path: Path to SQLite database file
            plan_cache_ttl_seconds: Lifetime of cached plan lookups (0 disables caching)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn: sqlite3.Connection | None = None
        self._initialized = False
        self._plan_cache: TTLCache | None = (
            TTLCache(maxsize=256, ttl=plan_cache_ttl_seconds) if plan_cache_ttl_seconds > 0 else None
        )

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing subscription database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscription_plans (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    upload_limit_mb INTEGER NOT NULL,
                    transcription_mins INTEGER,
                    summarization_limit INTEGER,
                    doc_export_limit INTEGER,
                    billing_interval TEXT,
                    price REAL,
                    paddle_price_id TEXT UNIQUE,
                    premium_templates INTEGER NOT NULL DEFAULT 0,
                    archive_access INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,

                    CHECK (billing_interval IS NULL OR billing_interval IN ('month', 'year')),
                    CHECK (upload_limit_mb >= 0)
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    starts_at TEXT NOT NULL,
                    ends_at TEXT,
                    auto_renew INTEGER NOT NULL DEFAULT 0,
                    cancel_at TEXT,
                    paddle_subscription_id TEXT UNIQUE,
                    paddle_transaction_id TEXT,
                    last_event_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (plan_id) REFERENCES subscription_plans(id),
                    CHECK (status IN ('active', 'trialing', 'paused', 'canceled')),
                    CHECK (auto_renew IN (0, 1))
                )
                """
            )

            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status
                ON subscriptions(user_id, status)
                """
            )

            # One active locally-managed (Free) row per user
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_one_local_active
                ON subscriptions(user_id)
                WHERE status = 'active' AND paddle_subscription_id IS NULL
                """
            )

            for table in sorted(USAGE_TABLES):
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        quantity INTEGER NOT NULL,
                        reference_id TEXT,
                        created_at TEXT NOT NULL,

                        CHECK (quantity > 0)
                    )
                    """
                )
                conn.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_user_created
                    ON {table}(user_id, created_at)
                    """
                )

            conn.commit()
            self._initialized = True
            logger.info("Subscription database initialized successfully")

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageError(f"Schema initialization failed: {e}") from e
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @contextmanager
    def _operation(self, name: str) -> Iterator[sqlite3.Connection]:
        """Yield the connection, rolling back and wrapping driver errors."""
        conn = self._get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(
                "Storage operation failed",
                extra={"operation": name, "error": str(e)},
            )
            raise StorageError(f"{name} failed: {e}") from e

    # ------------------------------------------------------------------
    # Plan catalog
    # ------------------------------------------------------------------

    async def create_plan(self, plan_create: PlanCreate, plan_id: str | None = None) -> Plan:
        """
        Insert a catalog plan.

        Raises:
            StorageError: If the name or price id is already taken
        """
        plan = Plan(id=plan_id or str(uuid.uuid4()), **plan_create.model_dump())
        with self._operation("create_plan") as conn:
            conn.execute(
                f"""
                INSERT INTO subscription_plans ({", ".join(PLAN_COLUMNS)}, created_at)
                VALUES ({", ".join("?" for _ in PLAN_COLUMNS)}, ?)
                """,
                (*(_to_db(getattr(plan, c)) for c in PLAN_COLUMNS), to_iso(utcnow())),
            )
            conn.commit()

        if self._plan_cache is not None:
            self._plan_cache.clear()
        logger.info(f"Created plan: {plan.name}")
        return plan

    async def list_plans(self) -> list[Plan]:
        with self._operation("list_plans") as conn:
            rows = conn.execute("SELECT * FROM subscription_plans ORDER BY name").fetchall()
        return [_row_to_plan(row) for row in rows]

    async def _get_plan_by(self, column: str, value: str) -> Plan | None:
        cache_key = (column, value)
        if self._plan_cache is not None and cache_key in self._plan_cache:
            return self._plan_cache[cache_key]

        with self._operation("get_plan") as conn:
            row = conn.execute(
                f"SELECT * FROM subscription_plans WHERE {column} = ?", (value,)
            ).fetchone()

        if not row:
            return None

        plan = _row_to_plan(row)
        if self._plan_cache is not None:
            self._plan_cache[cache_key] = plan
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        return await self._get_plan_by("id", plan_id)

    async def get_plan_by_name(self, name: str) -> Plan | None:
        return await self._get_plan_by("name", name)

    async def get_plan_by_price_id(self, paddle_price_id: str) -> Plan | None:
        return await self._get_plan_by("paddle_price_id", paddle_price_id)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def get_latest_active_subscription(self, user_id: str) -> tuple[Subscription, Plan] | None:
        """
        Get the user's most recently updated active subscription joined to its plan.

        Returns:
            (subscription, plan) or None if the user has no active row
        """
        with self._operation("get_latest_active_subscription") as conn:
            row = conn.execute(
                f"""
                SELECT {_SUBSCRIPTION_SELECT}, {_JOINED_PLAN_SELECT}
                FROM subscriptions s
                JOIN subscription_plans p ON p.id = s.plan_id
                WHERE s.user_id = ? AND s.status = 'active'
                ORDER BY {_LATEST_ACTIVE_ORDER}
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()

        if not row:
            return None
        return _row_to_subscription(row), _row_to_plan(row, prefix="plan__")

    async def get_latest_paddle_subscription(self, user_id: str) -> Subscription | None:
        """Get the user's most recently updated Paddle-backed subscription, any status."""
        with self._operation("get_latest_paddle_subscription") as conn:
            row = conn.execute(
                f"""
                SELECT {_SUBSCRIPTION_SELECT}
                FROM subscriptions s
                WHERE s.user_id = ? AND s.paddle_subscription_id IS NOT NULL
                ORDER BY {_LATEST_ACTIVE_ORDER}
                LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return _row_to_subscription(row) if row else None

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        with self._operation("list_subscriptions") as conn:
            rows = conn.execute(
                f"""
                SELECT {_SUBSCRIPTION_SELECT}
                FROM subscriptions s
                WHERE s.user_id = ?
                ORDER BY s.created_at
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_subscription(row) for row in rows]

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        with self._operation("get_subscription") as conn:
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_SELECT} FROM subscriptions s WHERE s.id = ?",
                (subscription_id,),
            ).fetchone()
        return _row_to_subscription(row) if row else None

    async def get_subscription_by_external_id(self, paddle_subscription_id: str) -> Subscription | None:
        with self._operation("get_subscription_by_external_id") as conn:
            row = conn.execute(
                f"SELECT {_SUBSCRIPTION_SELECT} FROM subscriptions s WHERE s.paddle_subscription_id = ?",
                (paddle_subscription_id,),
            ).fetchone()
        return _row_to_subscription(row) if row else None

    async def insert_subscription(
        self, subscription_create: SubscriptionCreate, now: datetime | None = None
    ) -> Subscription:
        """
        Insert a subscription row.

        Raises:
            DuplicateSubscriptionError: If a uniqueness constraint is violated
                (second active Free row for the user, or reused Paddle id)
            StorageError: For any other store failure
        """
        now = now or utcnow()
        subscription = Subscription(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            **subscription_create.model_dump(),
        )

        with self._operation("insert_subscription") as conn:
            try:
                conn.execute(
                    f"""
                    INSERT INTO subscriptions ({", ".join(SUBSCRIPTION_COLUMNS)})
                    VALUES ({", ".join("?" for _ in SUBSCRIPTION_COLUMNS)})
                    """,
                    tuple(_to_db(getattr(subscription, c)) for c in SUBSCRIPTION_COLUMNS),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if "UNIQUE constraint failed" in str(e):
                    logger.info(
                        "Subscription insert hit uniqueness constraint",
                        extra={"user_id": subscription.user_id},
                    )
                    raise DuplicateSubscriptionError(str(e)) from e
                raise

        return subscription

    async def update_subscription(
        self, subscription_id: str, fields: dict[str, Any], now: datetime | None = None
    ) -> Subscription | None:
        """
        Update the given columns of a subscription row.

        Returns:
            Updated subscription or None if not found
        """
        unknown = set(fields) - UPDATABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in fields]
        params = [_to_db(value) for value in fields.values()]
        assignments.append("updated_at = ?")
        params.append(to_iso(now or utcnow()))
        params.append(subscription_id)

        with self._operation("update_subscription") as conn:
            cursor = conn.execute(
                f"UPDATE subscriptions SET {', '.join(assignments)} WHERE id = ?", params
            )
            conn.commit()

        if cursor.rowcount == 0:
            return None
        return await self.get_subscription(subscription_id)

    async def upsert_subscription_by_external_id(
        self, subscription_create: SubscriptionCreate, now: datetime | None = None
    ) -> tuple[Subscription | None, bool]:
        """
        Insert or update the row keyed by Paddle subscription id.

        The update is skipped when the stored ``last_event_at`` is newer than
        the incoming one, so out-of-order deliveries cannot regress a row.

        Returns:
            (row as stored, whether this call changed it)
        """
        if not subscription_create.paddle_subscription_id:
            raise ValueError("Upsert requires a Paddle subscription id")

        now = now or utcnow()
        values = {
            "id": str(uuid.uuid4()),
            **subscription_create.model_dump(),
            "created_at": now,
            "updated_at": now,
        }

        with self._operation("upsert_subscription") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO subscriptions ({", ".join(SUBSCRIPTION_COLUMNS)})
                VALUES ({", ".join("?" for _ in SUBSCRIPTION_COLUMNS)})
                ON CONFLICT(paddle_subscription_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    plan_id = excluded.plan_id,
                    status = excluded.status,
                    starts_at = excluded.starts_at,
                    ends_at = excluded.ends_at,
                    auto_renew = excluded.auto_renew,
                    cancel_at = excluded.cancel_at,
                    paddle_transaction_id = COALESCE(
                        excluded.paddle_transaction_id, subscriptions.paddle_transaction_id
                    ),
                    last_event_at = COALESCE(excluded.last_event_at, subscriptions.last_event_at),
                    updated_at = excluded.updated_at
                WHERE excluded.last_event_at IS NULL
                    OR subscriptions.last_event_at IS NULL
                    OR excluded.last_event_at >= subscriptions.last_event_at
                """,
                tuple(_to_db(values[c]) for c in SUBSCRIPTION_COLUMNS),
            )
            conn.commit()

        applied = cursor.rowcount > 0
        stored = await self.get_subscription_by_external_id(subscription_create.paddle_subscription_id)
        return stored, applied

    async def update_subscription_by_external_id(
        self,
        paddle_subscription_id: str,
        fields: dict[str, Any],
        event_at: datetime | None = None,
        now: datetime | None = None,
    ) -> Subscription | None:
        """
        Update a Paddle-linked row unless a newer event was already applied.

        Returns:
            Updated subscription, or None if missing or the event is stale
        """
        unknown = set(fields) - UPDATABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update subscription fields: {sorted(unknown)}")

        assignments = [f"{name} = ?" for name in fields]
        params: list[Any] = [_to_db(value) for value in fields.values()]
        assignments.append("last_event_at = COALESCE(?, last_event_at)")
        params.append(to_iso(event_at))
        assignments.append("updated_at = ?")
        params.append(to_iso(now or utcnow()))

        event_iso = to_iso(event_at)
        params.extend([paddle_subscription_id, event_iso, event_iso])

        with self._operation("update_subscription_by_external_id") as conn:
            cursor = conn.execute(
                f"""
                UPDATE subscriptions SET {", ".join(assignments)}
                WHERE paddle_subscription_id = ?
                    AND (? IS NULL OR last_event_at IS NULL OR last_event_at <= ?)
                """,
                params,
            )
            conn.commit()

        if cursor.rowcount == 0:
            return None
        return await self.get_subscription_by_external_id(paddle_subscription_id)

    async def advance_window(
        self,
        paddle_subscription_id: str,
        starts_at: datetime,
        ends_at: datetime,
        transaction_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Move a paid row to a later billing window after a successful payment.

        Only moves forward: a replayed or reordered payment event for an
        earlier period leaves the row untouched.

        Returns:
            bool: True if the window advanced
        """
        ends_iso = to_iso(ends_at)
        with self._operation("advance_window") as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions
                SET starts_at = ?,
                    ends_at = ?,
                    status = 'active',
                    paddle_transaction_id = COALESCE(?, paddle_transaction_id),
                    updated_at = ?
                WHERE paddle_subscription_id = ?
                    AND (ends_at IS NULL OR ends_at < ?)
                """,
                (
                    to_iso(starts_at),
                    ends_iso,
                    transaction_id,
                    to_iso(now or utcnow()),
                    paddle_subscription_id,
                    ends_iso,
                ),
            )
            conn.commit()
        return cursor.rowcount > 0

    async def supersede_local_subscriptions(self, user_id: str, now: datetime | None = None) -> int:
        """
        Cancel the user's active locally-managed rows (paid activation replaces Free).

        Returns:
            int: Number of rows canceled
        """
        now_iso = to_iso(now or utcnow())
        with self._operation("supersede_local_subscriptions") as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions
                SET status = 'canceled',
                    auto_renew = 0,
                    cancel_at = ?,
                    updated_at = ?
                WHERE user_id = ?
                    AND status = 'active'
                    AND paddle_subscription_id IS NULL
                """,
                (now_iso, now_iso, user_id),
            )
            conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Usage ledgers
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        table: str,
        user_id: str,
        quantity: int,
        reference_id: str | None = None,
        now: datetime | None = None,
    ) -> UsageRecord:
        """Append an unconditional usage entry."""
        table = _usage_table(table)
        created_at = now or utcnow()
        with self._operation("record_usage") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {table} (user_id, quantity, reference_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, quantity, reference_id, to_iso(created_at)),
            )
            conn.commit()
        return UsageRecord(
            id=cursor.lastrowid,
            user_id=user_id,
            quantity=quantity,
            reference_id=reference_id,
            created_at=created_at,
        )

    async def record_usage_within_limit(
        self,
        table: str,
        user_id: str,
        quantity: int,
        limit: int,
        window_start: datetime,
        window_end: datetime | None,
        reference_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Append a usage entry only if the window total stays within ``limit``.

        The sum and the insert run as one statement, so two concurrent
        requests cannot both pass the check and overshoot the quota.

        Returns:
            bool: True if the entry was written
        """
        table = _usage_table(table)
        start_iso = to_iso(window_start)
        end_iso = to_iso(window_end)
        with self._operation("record_usage_within_limit") as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {table} (user_id, quantity, reference_id, created_at)
                SELECT ?, ?, ?, ?
                WHERE (
                    SELECT COALESCE(SUM(quantity), 0) FROM {table}
                    WHERE user_id = ?
                        AND created_at >= ?
                        AND (? IS NULL OR created_at < ?)
                ) + ? <= ?
                """,
                (
                    user_id,
                    quantity,
                    reference_id,
                    to_iso(now or utcnow()),
                    user_id,
                    start_iso,
                    end_iso,
                    end_iso,
                    quantity,
                    limit,
                ),
            )
            conn.commit()
        return cursor.rowcount > 0

    async def sum_usage(
        self, table: str, user_id: str, window_start: datetime, window_end: datetime | None
    ) -> int:
        """
        Total quantity recorded in ``[window_start, window_end)``.

        A missing ``window_end`` leaves the window open.
        """
        table = _usage_table(table)
        end_iso = to_iso(window_end)
        with self._operation("sum_usage") as conn:
            row = conn.execute(
                f"""
                SELECT COALESCE(SUM(quantity), 0) AS total FROM {table}
                WHERE user_id = ?
                    AND created_at >= ?
                    AND (? IS NULL OR created_at < ?)
                """,
                (user_id, to_iso(window_start), end_iso, end_iso),
            ).fetchone()
        return int(row["total"])

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
