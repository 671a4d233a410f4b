"""
User ledger storage using SQLite (bootstrap) → PostgreSQL (production).

Tables:
- users: one ledger row per end-user (entitlement flags, listen credits)
- processed_events: billing event ids already applied (idempotency gate)
- appstore_notifications: raw App Store notifications kept for diagnostics
- audit_log: every ledger mutation, creation and deletion

Concurrency:
- Each billing event is applied as ONE UPDATE statement; the re-delivery guard
  and monotonic expiry are evaluated inside SQL against the current row.
- The event id claim and the ledger UPDATE commit in the same transaction, so a
  failed write leaves no claim and a duplicate delivery can never apply twice.
"""

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from mosaic.models.billing import (
    ExpiryUpdate,
    LedgerMutation,
    MarkResult,
    ProcessedEventRecord,
    UserIdentity,
)
from mosaic.models.user import User, UserCreate

logger = logging.getLogger(__name__)

# Columns a LedgerMutation may assign directly
MUTABLE_LEDGER_COLUMNS = frozenset(
    {
        "is_premium",
        "is_paused",
        "is_cancelled",
        "billing_issue",
        "active_subscription_id",
        "active_product_id",
        "billing_app_user_id",
        "stripe_customer_id",
        "stripe_subscription_id",
        "apple_original_transaction_id",
    }
)


class LedgerStoreError(Exception):
    """Raised when the ledger cannot be read or written."""

    pass


class _EventAlreadyClaimed(Exception):
    pass


@dataclass
class LedgerWriteResult:
    """Outcome of apply_ledger_mutation."""

    claim: MarkResult | None
    before: User | None = None
    after: User | None = None
    bonus_applied: bool = False

    @property
    def applied(self) -> bool:
        return self.after is not None


_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return _EPOCH + timedelta(milliseconds=value)


class UserDatabase:
    """
    User ledger and idempotency storage.

    Uses SQLite for bootstrapping (free, embedded). Every statement is
    parameterized; column names in dynamic UPDATEs come from a whitelist.
    """

    def __init__(self, db_path: str = "./data/mosaic.db"):
        """
        Initialize user database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing ledger database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row

        try:
            # WAL mode lets readers proceed while a webhook write is committing
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    billing_app_user_id TEXT,
                    stripe_customer_id TEXT,
                    stripe_subscription_id TEXT,
                    apple_original_transaction_id TEXT,
                    is_premium INTEGER NOT NULL DEFAULT 0,
                    premium_expires_at INTEGER,
                    is_paused INTEGER NOT NULL DEFAULT 0,
                    is_cancelled INTEGER NOT NULL DEFAULT 0,
                    billing_issue INTEGER NOT NULL DEFAULT 0,
                    listen_credits INTEGER NOT NULL DEFAULT 0,
                    active_subscription_id TEXT,
                    active_product_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (listen_credits >= 0),
                    CHECK (is_premium IN (0, 1)),
                    CHECK (is_paused IN (0, 1)),
                    CHECK (is_cancelled IN (0, 1)),
                    CHECK (billing_issue IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_events (
                    event_id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS appstore_notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    notification_type TEXT,
                    payload TEXT NOT NULL,
                    received_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_billing_app_user "
                "ON users(billing_app_user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_stripe_customer ON users(stripe_customer_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_apple_otid "
                "ON users(apple_original_transaction_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_users_premium_expiry "
                "ON users(is_premium, premium_expires_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")

            conn.commit()
            logger.info("Ledger database initialized successfully")
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
        return self._conn

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            email=row["email"],
            name=row["name"],
            billing_app_user_id=row["billing_app_user_id"],
            stripe_customer_id=row["stripe_customer_id"],
            stripe_subscription_id=row["stripe_subscription_id"],
            apple_original_transaction_id=row["apple_original_transaction_id"],
            is_premium=bool(row["is_premium"]),
            premium_expires_at=from_epoch_ms(row["premium_expires_at"]),
            is_paused=bool(row["is_paused"]),
            is_cancelled=bool(row["is_cancelled"]),
            billing_issue=bool(row["billing_issue"]),
            listen_credits=row["listen_credits"],
            active_subscription_id=row["active_subscription_id"],
            active_product_id=row["active_product_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _select_user(self, conn: sqlite3.Connection, user_id: str) -> User | None:
        row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, user_create: UserCreate, starter_credits: int = 0) -> User | None:
        """
        Create a ledger row at signup.

        Returns:
            User: Created user, or None if the email is already registered
        """
        now = datetime.now(UTC)
        user = User(
            user_id=uuid.uuid4().hex,
            email=user_create.email,
            name=user_create.name,
            billing_app_user_id=user_create.billing_app_user_id,
            listen_credits=starter_credits,
            created_at=now,
            updated_at=now,
        )

        conn = self._get_connection()
        try:
            with self._lock, conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        user_id, email, name, billing_app_user_id,
                        listen_credits, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.user_id,
                        user.email,
                        user.name,
                        user.billing_app_user_id,
                        user.listen_credits,
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                self._insert_audit(
                    conn,
                    action="CREATE",
                    resource_type="user",
                    user_id=user.user_id,
                    resource_id=user.user_id,
                    details=f"starter_credits={starter_credits}",
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                logger.warning("User creation failed: email already registered")
                return None
            raise

        logger.info(f"Created user: {user.user_id}")
        return user

    async def get_user(self, user_id: str) -> User | None:
        """Get user by ID."""
        return self._select_user(self._get_connection(), user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        """Get user by email (case-insensitive)."""
        row = (
            self._get_connection()
            .execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),))
            .fetchone()
        )
        return self._row_to_user(row) if row else None

    async def find_user_by_identity(self, identity: UserIdentity) -> User | None:
        """
        Resolve the ledger row a billing payload refers to.

        Lookup order:
            1. each app user id against billing_app_user_id, then user_id
            2. stripe_customer_id
            3. apple_original_transaction_id
            4. email (a purchase can land before the app user id is linked)
        """
        conn = self._get_connection()

        lookups: list[tuple[str, str]] = []
        for app_user_id in identity.app_user_ids:
            lookups.append(("billing_app_user_id", app_user_id))
            lookups.append(("user_id", app_user_id))
        if identity.stripe_customer_id:
            lookups.append(("stripe_customer_id", identity.stripe_customer_id))
        if identity.apple_original_transaction_id:
            lookups.append(
                ("apple_original_transaction_id", identity.apple_original_transaction_id)
            )
        if identity.email:
            lookups.append(("email", identity.email.strip().lower()))

        for column, value in lookups:
            try:
                row = conn.execute(
                    f"SELECT * FROM users WHERE {column} = ? ORDER BY created_at LIMIT 1",
                    (value,),
                ).fetchone()
            except sqlite3.Error as e:
                raise LedgerStoreError(f"User lookup failed: {e}") from e
            if row:
                logger.debug(
                    "Resolved billing identity",
                    extra={"matched_on": column, "user_id": row["user_id"]},
                )
                return self._row_to_user(row)

        return None

    async def consume_listen_credit(self, user_id: str, amount: int = 1) -> int | None:
        """
        Atomically spend listen credits.

        Returns:
            int: Remaining balance, or None if the user lacks enough credits
        """
        conn = self._get_connection()
        now = datetime.now(UTC).isoformat()

        with self._lock, conn:
            cursor = conn.execute(
                """
                UPDATE users
                SET listen_credits = listen_credits - ?,
                    updated_at = ?
                WHERE user_id = ? AND listen_credits >= ?
                """,
                (amount, now, user_id, amount),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT listen_credits FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()

        return row["listen_credits"]

    async def delete_user(self, user_id: str) -> bool:
        """Delete a user on explicit account-deletion request."""
        conn = self._get_connection()
        with self._lock, conn:
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            if cursor.rowcount > 0:
                self._insert_audit(
                    conn,
                    action="DELETE",
                    resource_type="user",
                    user_id=user_id,
                    resource_id=user_id,
                )
        return cursor.rowcount > 0

    async def expire_lapsed_premium(self, now: datetime | None = None) -> list[str]:
        """
        Clear premium on rows whose stored expiry has passed.

        Returns:
            list[str]: user_ids that were downgraded
        """
        now_ms = to_epoch_ms(now or datetime.now(UTC))
        conn = self._get_connection()

        with self._lock, conn:
            rows = conn.execute(
                """
                SELECT user_id FROM users
                WHERE is_premium = 1
                  AND premium_expires_at IS NOT NULL
                  AND premium_expires_at <= ?
                """,
                (now_ms,),
            ).fetchall()
            user_ids = [row["user_id"] for row in rows]

            if user_ids:
                conn.execute(
                    f"""
                    UPDATE users
                    SET is_premium = 0,
                        updated_at = ?
                    WHERE user_id IN ({", ".join("?" for _ in user_ids)})
                      AND premium_expires_at <= ?
                    """,
                    (datetime.now(UTC).isoformat(), *user_ids, now_ms),
                )
                for user_id in user_ids:
                    self._insert_audit(
                        conn,
                        action="EXPIRE_PREMIUM",
                        resource_type="user",
                        user_id=user_id,
                        resource_id=user_id,
                    )

        if user_ids:
            logger.info(f"Expired lapsed premium for {len(user_ids)} users")
        return user_ids

    # ------------------------------------------------------------------
    # Billing ledger
    # ------------------------------------------------------------------

    def _build_update(self, mutation: LedgerMutation, now: str) -> tuple[str, list]:
        sets: list[str] = []
        params: list = []

        for column, value in mutation.assignments.items():
            if column not in MUTABLE_LEDGER_COLUMNS:
                raise ValueError(f"Column not assignable by a ledger mutation: {column}")
            sets.append(f"{column} = ?")
            params.append(int(value) if isinstance(value, bool) else value)

        expires_ms = to_epoch_ms(mutation.expires_at)
        if expires_ms is not None and mutation.expiry_update == ExpiryUpdate.EXTEND:
            sets.append(
                "premium_expires_at = CASE "
                "WHEN premium_expires_at IS NULL OR premium_expires_at < ? THEN ? "
                "ELSE premium_expires_at END"
            )
            params.extend([expires_ms, expires_ms])
        elif expires_ms is not None and mutation.expiry_update == ExpiryUpdate.REPLACE:
            sets.append("premium_expires_at = ?")
            params.append(expires_ms)

        credit_expr = "listen_credits"
        if mutation.consumable_credits:
            credit_expr += " + ?"
            params.append(mutation.consumable_credits)
        if mutation.bonus_credits:
            # Evaluated against the pre-update row: SQLite computes every SET
            # expression from the old values.
            credit_expr += " + CASE WHEN active_subscription_id IS ? THEN 0 ELSE ? END"
            params.extend([mutation.bonus_guard_subscription_id, mutation.bonus_credits])
        if credit_expr != "listen_credits":
            sets.append(f"listen_credits = {credit_expr}")

        sets.append("updated_at = ?")
        params.append(now)

        params.append(mutation.user_id)
        return f"UPDATE users SET {', '.join(sets)} WHERE user_id = ?", params

    async def apply_ledger_mutation(
        self,
        mutation: LedgerMutation,
        event_id: str | None = None,
        provider: str = "unknown",
    ) -> LedgerWriteResult:
        """
        Apply a mutation to one ledger row in a single transaction.

        When event_id is given it is claimed in the same transaction; if another
        delivery already claimed it, nothing is written.

        Raises:
            LedgerStoreError: If the write fails (the event stays unclaimed)
        """
        if mutation.user_id is None:
            raise ValueError("Cannot apply a mutation without a resolved user")

        conn = self._get_connection()
        now = datetime.now(UTC).isoformat()

        try:
            with self._lock:
                try:
                    with conn:
                        if event_id:
                            try:
                                conn.execute(
                                    "INSERT INTO processed_events (event_id, provider, created_at) "
                                    "VALUES (?, ?, ?)",
                                    (event_id, provider, now),
                                )
                            except sqlite3.IntegrityError as e:
                                raise _EventAlreadyClaimed(event_id) from e

                        before = self._select_user(conn, mutation.user_id)
                        if before is None:
                            logger.warning(
                                "Ledger row disappeared before mutation",
                                extra={"user_id": mutation.user_id, "event_id": event_id},
                            )
                            return LedgerWriteResult(
                                claim=MarkResult.INSERTED if event_id else None
                            )

                        query, params = self._build_update(mutation, now)
                        conn.execute(query, params)
                        after = self._select_user(conn, mutation.user_id)

                        self._insert_audit(
                            conn,
                            action="LEDGER_MUTATION",
                            resource_type="user",
                            user_id=mutation.user_id,
                            resource_id=event_id,
                            details=json.dumps(
                                {
                                    "provider": provider,
                                    "assignments": mutation.assignments,
                                    "expires_at": mutation.expires_at.isoformat()
                                    if mutation.expires_at
                                    else None,
                                    "expiry_update": mutation.expiry_update.value,
                                    "consumable_credits": mutation.consumable_credits,
                                    "bonus_credits": mutation.bonus_credits,
                                    "credits_delta": after.listen_credits - before.listen_credits,
                                    "notes": mutation.notes,
                                },
                                default=str,
                            ),
                        )
                except _EventAlreadyClaimed:
                    return LedgerWriteResult(claim=MarkResult.ALREADY_EXISTS)

        except sqlite3.Error as e:
            logger.error(
                "Ledger write failed",
                extra={"user_id": mutation.user_id, "event_id": event_id, "error": str(e)},
            )
            raise LedgerStoreError(f"Ledger write failed: {e}") from e

        bonus_applied = (
            mutation.bonus_credits > 0
            and before.active_subscription_id != mutation.bonus_guard_subscription_id
        )
        return LedgerWriteResult(
            claim=MarkResult.INSERTED if event_id else None,
            before=before,
            after=after,
            bonus_applied=bonus_applied,
        )

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    async def has_event_processed(self, event_id: str) -> bool:
        try:
            row = (
                self._get_connection()
                .execute("SELECT 1 FROM processed_events WHERE event_id = ?", (event_id,))
                .fetchone()
            )
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to read processed events: {e}") from e
        return row is not None

    async def mark_event_processed(self, event_id: str, provider: str = "unknown") -> MarkResult:
        """
        Claim an event id (insert-if-absent on the primary key).

        Exactly one concurrent caller observes INSERTED.
        """
        conn = self._get_connection()
        try:
            with self._lock, conn:
                conn.execute(
                    "INSERT INTO processed_events (event_id, provider, created_at) VALUES (?, ?, ?)",
                    (event_id, provider, datetime.now(UTC).isoformat()),
                )
        except sqlite3.IntegrityError:
            return MarkResult.ALREADY_EXISTS
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Failed to record processed event: {e}") from e
        return MarkResult.INSERTED

    async def get_processed_event(self, event_id: str) -> ProcessedEventRecord | None:
        row = (
            self._get_connection()
            .execute("SELECT * FROM processed_events WHERE event_id = ?", (event_id,))
            .fetchone()
        )
        if not row:
            return None
        return ProcessedEventRecord(
            event_id=row["event_id"],
            provider=row["provider"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def store_appstore_notification(
        self, payload: dict, notification_type: str | None = None
    ) -> None:
        """Persist a raw App Store notification for later inspection."""
        conn = self._get_connection()
        with self._lock, conn:
            conn.execute(
                "INSERT INTO appstore_notifications (notification_type, payload, received_at) "
                "VALUES (?, ?, ?)",
                (notification_type, json.dumps(payload), datetime.now(UTC).isoformat()),
            )

    async def count_appstore_notifications(self) -> int:
        row = (
            self._get_connection()
            .execute("SELECT COUNT(*) AS n FROM appstore_notifications")
            .fetchone()
        )
        return row["n"]

    def _insert_audit(
        self,
        conn: sqlite3.Connection,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> None:
        """Append an audit row inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO audit_log (
                timestamp, user_id, action, resource_type, resource_id, details
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (datetime.now(UTC).isoformat(), user_id, action, resource_type, resource_id, details),
        )

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# Global instance
_db: UserDatabase | None = None


async def get_user_db() -> UserDatabase:
    """
    Get global user database instance.

    Returns:
        UserDatabase: Initialized database
    """
    global _db
    if _db is None:
        from mosaic.config import get_settings

        _db = UserDatabase(db_path=get_settings().storage.database_path)
        await _db.initialize()
    return _db
