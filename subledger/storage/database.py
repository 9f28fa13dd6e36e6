"""
Subscriber quota store using SQLite.

All quota mutation is expressed as single-row statements:
- Conditional decrement (decrement only if both balances suffice)
- Full-row projection overwrite (plan + status + dates + allocation together)

Also holds the webhook delivery dedup table and the token usage log, so the
dedup guard lives in the same durable store as the quota it protects.

Performance features:
- Indexes on email, plan + token_reset_date (sweep), dedup expiry
- WAL journal for concurrent readers
"""

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from subledger.models.subscriber import (
    Plan,
    Subscriber,
    SubscriberCreate,
    SubscriberUpdate,
    SubscriptionStatus,
)
from subledger.models.usage import (
    GenerationStatus,
    TokenUsageAnalytics,
    TokenUsageCreate,
    TokenUsageRecord,
)
from subledger.utils.clock import ensure_utc

logger = logging.getLogger(__name__)


class SubscriberNotFoundError(Exception):
    """Subscriber row does not exist."""

    status_code = 404

    def __init__(self, subscriber_id: str):
        super().__init__(f"Subscriber not found: {subscriber_id}")
        self.subscriber_id = subscriber_id


# Columns a SubscriberUpdate may write
_UPDATABLE_COLUMNS = {
    "plan",
    "input_tokens_remaining",
    "output_tokens_remaining",
    "token_reset_date",
    "videos_processed_this_month",
    "video_reset_date",
    "subscription_id",
    "subscription_status",
    "next_billing_date",
    "cancel_at_billing_date",
    "name",
}


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC ISO timestamp so string comparison matches time order."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_column(key: str, value):
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, Plan):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class SubscriberDatabase:
    """
    Subscriber, webhook delivery and token usage storage.

    Uses SQLite (embedded, ACID). A single connection is shared by the
    process; each public method issues its statements without awaiting in
    between, so one call is never interleaved with another on the event loop.

    Invariants enforced by the schema:
    - input_tokens_remaining >= 0 and output_tokens_remaining >= 0
    - videos_processed_this_month >= 0
    """

    def __init__(self, db_path: str = "./data/subledger.db"):
        """
        Initialize subscriber database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing subscriber database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscribers (
                    subscriber_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    plan TEXT NOT NULL DEFAULT 'FREE',
                    input_tokens_remaining INTEGER NOT NULL DEFAULT 0,
                    output_tokens_remaining INTEGER NOT NULL DEFAULT 0,
                    token_reset_date TEXT,
                    videos_processed_this_month INTEGER NOT NULL DEFAULT 0,
                    video_reset_date TEXT,
                    subscription_id TEXT,
                    subscription_status TEXT NOT NULL DEFAULT 'free',
                    next_billing_date TEXT,
                    cancel_at_billing_date INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (input_tokens_remaining >= 0),
                    CHECK (output_tokens_remaining >= 0),
                    CHECK (videos_processed_this_month >= 0),
                    CHECK (cancel_at_billing_date IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_deliveries (
                    delivery_id TEXT PRIMARY KEY,
                    event_type TEXT,
                    claimed_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_usage (
                    usage_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscriber_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    video_id TEXT NOT NULL,
                    video_url TEXT NOT NULL,
                    video_title TEXT,
                    input_tokens INTEGER NOT NULL,
                    output_tokens INTEGER NOT NULL,
                    total_tokens INTEGER NOT NULL,
                    model TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    summary_id TEXT,
                    is_saved INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'success',
                    error_message TEXT,
                    created_at TEXT NOT NULL,

                    FOREIGN KEY (subscriber_id) REFERENCES subscribers(subscriber_id)
                        ON DELETE CASCADE,
                    CHECK (is_saved IN (0, 1))
                )
            """
            )

            # Audit log (compliance: track every quota/projection mutation)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    subscriber_id TEXT,
                    action TEXT NOT NULL,
                    details TEXT
                )
            """
            )

            conn.execute("CREATE INDEX IF NOT EXISTS idx_subscribers_email ON subscribers(email)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscribers_due "
                "ON subscribers(plan, token_reset_date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_expiry ON webhook_deliveries(expires_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_subscriber "
                "ON token_usage(subscriber_id, created_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_subscriber ON audit_log(subscriber_id)")

            conn.commit()
            logger.info("Subscriber database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    async def create_subscriber(
        self,
        subscriber_create: SubscriberCreate,
        input_tokens: int,
        output_tokens: int,
        reset_date: datetime,
    ) -> Subscriber | None:
        """
        Create a FREE subscriber with its initial allocation.

        Args:
            subscriber_create: Identity of the new account
            input_tokens: FREE input allocation
            output_tokens: FREE output allocation
            reset_date: End of the first cycle

        Returns:
            Subscriber, or None if the ID or e-mail already exists
        """
        now = datetime.now(UTC)
        subscriber = Subscriber(
            subscriber_id=subscriber_create.subscriber_id,
            email=subscriber_create.email,
            name=subscriber_create.name,
            plan=Plan.FREE,
            input_tokens_remaining=input_tokens,
            output_tokens_remaining=output_tokens,
            token_reset_date=reset_date,
            video_reset_date=reset_date,
            subscription_status=SubscriptionStatus.FREE.value,
            created_at=now,
            updated_at=now,
        )

        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO subscribers (
                    subscriber_id, email, name, plan,
                    input_tokens_remaining, output_tokens_remaining, token_reset_date,
                    videos_processed_this_month, video_reset_date,
                    subscription_status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    subscriber.subscriber_id,
                    subscriber.email,
                    subscriber.name,
                    subscriber.plan.value,
                    subscriber.input_tokens_remaining,
                    subscriber.output_tokens_remaining,
                    _ts(reset_date),
                    _ts(reset_date),
                    subscriber.subscription_status,
                    _ts(now),
                    _ts(now),
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning(
                    f"Subscriber creation failed: {subscriber.subscriber_id} already exists"
                )
                return None
            raise

        await self._log_audit("CREATE", subscriber.subscriber_id)
        logger.info(f"Created subscriber: {subscriber.subscriber_id}")
        return subscriber

    async def get_subscriber(self, subscriber_id: str) -> Subscriber | None:
        """
        Get subscriber by ID.

        Returns:
            Subscriber or None if not found
        """
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscribers WHERE subscriber_id = ?", (subscriber_id,)
        ).fetchone()
        return self._row_to_subscriber(row) if row else None

    async def get_subscriber_by_email(self, email: str) -> Subscriber | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscribers WHERE email = ?", (email.lower(),)
        ).fetchone()
        return self._row_to_subscriber(row) if row else None

    async def update_subscriber(
        self, subscriber_id: str, update: SubscriberUpdate
    ) -> Subscriber | None:
        """
        Write the explicitly-set fields of ``update`` in one statement.

        Returns:
            Updated subscriber or None if not found
        """
        if not update.model_dump(exclude_unset=True):
            return await self.get_subscriber(subscriber_id)
        return await self._update_where("subscriber_id = ?", [subscriber_id], update)

    async def reset_allocation(
        self,
        subscriber_id: str,
        plan: Plan,
        update: SubscriberUpdate,
        due_at: datetime | None = None,
    ) -> Subscriber | None:
        """
        Install an allocation only while the row still holds ``plan``.

        With ``due_at`` the row must also still have a cycle that ended at or
        before ``due_at``, so a cycle that another worker already reset (and
        possibly consumed from) is left alone.

        Returns:
            Updated subscriber, or None if no row matched the conditions
        """
        where = "subscriber_id = ? AND plan = ?"
        params: list = [subscriber_id, plan.value]
        if due_at is not None:
            where += " AND token_reset_date IS NOT NULL AND token_reset_date <= ?"
            params.append(_ts(due_at))
        return await self._update_where(where, params, update)

    async def _update_where(
        self, where: str, where_params: list, update: SubscriberUpdate
    ) -> Subscriber | None:
        fields = update.model_dump(exclude_unset=True)
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")

        assignments = [f"{column} = ?" for column in fields]
        params = [_to_column(column, getattr(update, column)) for column in fields]
        assignments.append("updated_at = ?")
        params.append(_ts(datetime.now(UTC)))
        params.extend(where_params)

        conn = self._get_connection()
        rows = conn.execute(
            f"UPDATE subscribers SET {', '.join(assignments)} WHERE {where} RETURNING *",
            params,
        ).fetchall()
        conn.commit()

        if not rows:
            return None

        subscriber = self._row_to_subscriber(rows[0])
        await self._log_audit("UPDATE", subscriber.subscriber_id, details=", ".join(sorted(fields)))
        return subscriber

    async def decrement_if_sufficient(
        self, subscriber_id: str, input_delta: int, output_delta: int
    ) -> tuple[bool, Subscriber | None]:
        """
        Atomically decrement both balances if, and only if, both suffice.

        The sufficiency test and the decrement are one UPDATE, so concurrent
        callers serialize at the row and the balances can never go negative.

        Returns:
            (success, subscriber after the statement). On failure the
            subscriber is re-read unchanged (None if it does not exist).
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            UPDATE subscribers
            SET input_tokens_remaining = input_tokens_remaining - ?,
                output_tokens_remaining = output_tokens_remaining - ?,
                updated_at = ?
            WHERE subscriber_id = ?
              AND input_tokens_remaining >= ?
              AND output_tokens_remaining >= ?
            RETURNING *
            """,
            (
                input_delta,
                output_delta,
                _ts(datetime.now(UTC)),
                subscriber_id,
                input_delta,
                output_delta,
            ),
        ).fetchall()
        conn.commit()

        if rows:
            return True, self._row_to_subscriber(rows[0])
        return False, await self.get_subscriber(subscriber_id)

    async def increment_units_if_available(
        self, subscriber_id: str, count: int, unit_limit: int
    ) -> tuple[bool, Subscriber | None]:
        """Atomically add ``count`` processed units while staying within ``unit_limit``."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            UPDATE subscribers
            SET videos_processed_this_month = videos_processed_this_month + ?,
                updated_at = ?
            WHERE subscriber_id = ?
              AND videos_processed_this_month + ? <= ?
            RETURNING *
            """,
            (count, _ts(datetime.now(UTC)), subscriber_id, count, unit_limit),
        ).fetchall()
        conn.commit()

        if rows:
            return True, self._row_to_subscriber(rows[0])
        return False, await self.get_subscriber(subscriber_id)

    async def find_due(self, plans: set[Plan], now: datetime) -> list[Subscriber]:
        """
        Subscribers on one of ``plans`` whose token cycle ended at or before ``now``.
        """
        if not plans:
            return []

        placeholders = ", ".join("?" for _ in plans)
        conn = self._get_connection()
        rows = conn.execute(
            f"""
            SELECT * FROM subscribers
            WHERE plan IN ({placeholders})
              AND token_reset_date IS NOT NULL
              AND token_reset_date <= ?
            ORDER BY token_reset_date
            """,
            (*sorted(plan.value for plan in plans), _ts(now)),
        ).fetchall()
        return [self._row_to_subscriber(row) for row in rows]

    # ------------------------------------------------------------------
    # Webhook delivery dedup
    # ------------------------------------------------------------------

    async def claim_webhook_delivery(
        self,
        delivery_id: str,
        event_type: str | None,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Claim a delivery ID for processing.

        Inserts the ID, or re-claims it only when the previous claim has
        expired. Single statement, so two instances sharing the store cannot
        both claim the same live delivery.

        Returns:
            True if this caller owns the delivery, False if it is a duplicate
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO webhook_deliveries (delivery_id, event_type, claimed_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(delivery_id) DO UPDATE SET
                event_type = excluded.event_type,
                claimed_at = excluded.claimed_at,
                expires_at = excluded.expires_at
            WHERE webhook_deliveries.expires_at <= ?
            """,
            (delivery_id, event_type, _ts(now), _ts(expires_at), _ts(now)),
        )
        conn.commit()
        return cursor.rowcount > 0

    async def release_webhook_delivery(self, delivery_id: str) -> bool:
        """Forget a delivery so the provider's retry is processed again."""
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM webhook_deliveries WHERE delivery_id = ?", (delivery_id,)
        )
        conn.commit()
        return cursor.rowcount > 0

    async def purge_expired_webhook_deliveries(self, now: datetime) -> int:
        """Delete dedup entries whose window has passed. Returns rows removed."""
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM webhook_deliveries WHERE expires_at <= ?", (_ts(now),)
        )
        conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Token usage log
    # ------------------------------------------------------------------

    async def insert_token_usage(self, usage: TokenUsageCreate) -> TokenUsageRecord:
        now = datetime.now(UTC)
        total = usage.input_tokens + usage.output_tokens

        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO token_usage (
                subscriber_id, email, video_id, video_url, video_title,
                input_tokens, output_tokens, total_tokens, model, operation,
                summary_id, is_saved, status, error_message, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                usage.subscriber_id,
                usage.email,
                usage.video_id,
                usage.video_url,
                usage.video_title,
                usage.input_tokens,
                usage.output_tokens,
                total,
                usage.model,
                usage.operation,
                usage.summary_id,
                int(usage.is_saved),
                usage.status.value,
                usage.error_message,
                _ts(now),
            ),
        )
        conn.commit()

        return TokenUsageRecord(
            **usage.model_dump(),
            usage_id=cursor.lastrowid,
            total_tokens=total,
            created_at=now,
        )

    async def mark_latest_usage_saved(
        self, subscriber_id: str, video_id: str, summary_id: str
    ) -> int | None:
        """
        Flag the most recent unsaved record for a video as saved.

        Returns:
            usage_id of the updated record, or None if there was none
        """
        conn = self._get_connection()
        rows = conn.execute(
            """
            UPDATE token_usage
            SET is_saved = 1, summary_id = ?
            WHERE usage_id = (
                SELECT usage_id FROM token_usage
                WHERE subscriber_id = ? AND video_id = ? AND is_saved = 0
                ORDER BY created_at DESC, usage_id DESC
                LIMIT 1
            )
            RETURNING usage_id
            """,
            (summary_id, subscriber_id, video_id),
        ).fetchall()
        conn.commit()
        return rows[0]["usage_id"] if rows else None

    async def token_usage_totals(self, subscriber_id: str) -> TokenUsageAnalytics:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT COUNT(*) AS generations,
                   COALESCE(SUM(is_saved), 0) AS saved,
                   COALESCE(SUM(input_tokens), 0) AS input_tokens,
                   COALESCE(SUM(output_tokens), 0) AS output_tokens,
                   COALESCE(SUM(total_tokens), 0) AS total_tokens
            FROM token_usage
            WHERE subscriber_id = ?
            """,
            (subscriber_id,),
        ).fetchone()

        return TokenUsageAnalytics(
            total_generations=row["generations"],
            total_saved=row["saved"],
            total_unsaved=row["generations"] - row["saved"],
            total_input_tokens=row["input_tokens"],
            total_output_tokens=row["output_tokens"],
            total_tokens=row["total_tokens"],
        )

    async def list_token_usage(
        self, subscriber_id: str, video_id: str | None = None, limit: int | None = None
    ) -> list[TokenUsageRecord]:
        """Usage records for a subscriber (optionally one video), newest first."""
        query = "SELECT * FROM token_usage WHERE subscriber_id = ?"
        params: list = [subscriber_id]
        if video_id is not None:
            query += " AND video_id = ?"
            params.append(video_id)
        query += " ORDER BY created_at DESC, usage_id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._get_connection()
        rows = conn.execute(query, params).fetchall()
        return [
            TokenUsageRecord(
                usage_id=row["usage_id"],
                subscriber_id=row["subscriber_id"],
                email=row["email"],
                video_id=row["video_id"],
                video_url=row["video_url"],
                video_title=row["video_title"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                total_tokens=row["total_tokens"],
                model=row["model"],
                operation=row["operation"],
                summary_id=row["summary_id"],
                is_saved=bool(row["is_saved"]),
                status=GenerationStatus(row["status"]),
                error_message=row["error_message"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_subscriber(row: sqlite3.Row) -> Subscriber:
        return Subscriber(
            subscriber_id=row["subscriber_id"],
            email=row["email"],
            name=row["name"],
            plan=Plan(row["plan"]),
            input_tokens_remaining=row["input_tokens_remaining"],
            output_tokens_remaining=row["output_tokens_remaining"],
            token_reset_date=_dt(row["token_reset_date"]),
            videos_processed_this_month=row["videos_processed_this_month"],
            video_reset_date=_dt(row["video_reset_date"]),
            subscription_id=row["subscription_id"],
            subscription_status=row["subscription_status"],
            next_billing_date=_dt(row["next_billing_date"]),
            cancel_at_billing_date=bool(row["cancel_at_billing_date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def _log_audit(
        self, action: str, subscriber_id: str | None = None, details: str | None = None
    ) -> None:
        """Record a mutation for compliance."""
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO audit_log (timestamp, subscriber_id, action, details) VALUES (?, ?, ?, ?)",
            (_ts(datetime.now(UTC)), subscriber_id, action, details),
        )
        conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
