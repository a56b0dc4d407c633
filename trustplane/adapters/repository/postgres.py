"""
PostgreSQL repository adapter - Implements the TrustStore protocol.

This module provides the PostgreSQL implementation of the domain's
store port using psycopg3 with raw SQL.

Transaction Design:
------------------
Every domain operation runs inside ``transaction()``, which checks out one
pooled connection and opens one database transaction on it:

1. **Row locks**: ``UserRepository.lock()`` issues ``SELECT ... FOR UPDATE``
   on the user row. Aggregate recomputation and quota downgrades for the
   same user are therefore serialized, so a recomputation never reads a
   stale snapshot of a concurrently approved category.

2. **All-or-nothing**: document status, category flag and aggregate flag
   are committed together; any exception rolls the whole unit back.

3. **Deadlines**: ``statement_timeout`` is set with ``SET LOCAL`` semantics
   (``set_config(..., true)``) so it only applies to this transaction.
   A cancelled statement surfaces as ``DependencyTimeout``.

4. **Invariant backstop**: the ``users`` table carries a CHECK constraint
   that the aggregate flag is never true while a category flag is false.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psycopg
from psycopg import errors, sql
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from trustplane.domain.exceptions import DependencyError, DependencyTimeout
from trustplane.domain.ports import (
    Category,
    DocumentPayload,
    DocumentStatus,
    DocumentType,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    VerificationDocument,
    VerificationFlags,
)

logger = logging.getLogger(__name__)

# Flag names used by the domain -> users table columns
_FLAG_COLUMNS = {
    "email": "is_email_verified",
    "phone": "is_phone_verified",
    "id": "is_id_verified",
    "facial": "is_facial_verified",
    "address": "is_address_verified",
    "is_verified": "is_verified",
}

_DOCUMENT_COLUMNS = """
    id::text, user_id, document_type, category, status, file_reference,
    created_at, back_file_reference, metadata, rejection_reason, verified_at
"""


def _row_to_document(row: tuple) -> VerificationDocument:
    return VerificationDocument(
        id=row[0],
        user_id=row[1],
        document_type=DocumentType(row[2]),
        category=Category(row[3]),
        status=DocumentStatus(row[4]),
        file_reference=row[5],
        created_at=row[6],
        back_file_reference=row[7],
        metadata=row[8] or {},
        rejection_reason=row[9],
        verified_at=row[10],
    )


class PostgresDocumentRepository:
    """Implements DocumentRepository protocol on one open connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def create(
        self, user_id: str, category: Category, payload: DocumentPayload, created_at: datetime
    ) -> str:
        sql_text = """
            INSERT INTO verification_documents
                (user_id, document_type, category, status, file_reference,
                 back_file_reference, metadata, created_at)
            VALUES (%s, %s, %s, 'PENDING', %s, %s, %s, %s)
            RETURNING id::text
        """
        with self._conn.cursor() as cursor:
            cursor.execute(
                sql_text,
                (
                    user_id,
                    DocumentType(payload.document_type).value,
                    category.value,
                    payload.file_reference,
                    payload.back_file_reference,
                    Jsonb(dict(payload.metadata)),
                    created_at,
                ),
            )
            return cursor.fetchone()[0]

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        reason: str | None = None,
        verified_at: datetime | None = None,
    ) -> None:
        sql_text = """
            UPDATE verification_documents
            SET status = %s, rejection_reason = %s, verified_at = %s
            WHERE id = %s::uuid
        """
        self._conn.execute(sql_text, (status.value, reason, verified_at, document_id))

    def get(self, document_id: str) -> VerificationDocument | None:
        try:
            uuid.UUID(document_id)
        except ValueError:
            # Not a UUID, so it cannot name a document
            return None
        sql_text = f"SELECT {_DOCUMENT_COLUMNS} FROM verification_documents WHERE id = %s::uuid"
        row = self._conn.execute(sql_text, (document_id,)).fetchone()
        return _row_to_document(row) if row else None

    def find_latest_by_category(
        self, user_id: str, category: Category
    ) -> VerificationDocument | None:
        sql_text = f"""
            SELECT {_DOCUMENT_COLUMNS} FROM verification_documents
            WHERE user_id = %s AND category = %s
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
        """
        row = self._conn.execute(sql_text, (user_id, category.value)).fetchone()
        return _row_to_document(row) if row else None

    def delete_by_category(self, user_id: str, category: Category) -> int:
        sql_text = "DELETE FROM verification_documents WHERE user_id = %s AND category = %s"
        with self._conn.cursor() as cursor:
            cursor.execute(sql_text, (user_id, category.value))
            return cursor.rowcount


class PostgresUserRepository:
    """Implements UserRepository protocol on one open connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def lock(self, user_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM users WHERE id = %s FOR UPDATE", (user_id,)
        ).fetchone()
        return row is not None

    def get_verification_flags(self, user_id: str) -> VerificationFlags | None:
        sql_text = """
            SELECT is_email_verified, is_phone_verified, is_id_verified,
                   is_facial_verified, is_address_verified, is_verified
            FROM users WHERE id = %s
        """
        row = self._conn.execute(sql_text, (user_id,)).fetchone()
        if row is None:
            return None
        return VerificationFlags(
            email=row[0], phone=row[1], id=row[2], facial=row[3], address=row[4], is_verified=row[5]
        )

    def set_verification_flags(self, user_id: str, **flags: bool) -> None:
        if not flags:
            return
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(_FLAG_COLUMNS[name]), sql.Placeholder())
            for name in flags
        )
        query = sql.SQL("UPDATE users SET {}, updated_at = NOW() WHERE id = {}").format(
            assignments, sql.Placeholder()
        )
        self._conn.execute(query, (*flags.values(), user_id))

    def get_subscription(self, user_id: str) -> Subscription | None:
        sql_text = """
            SELECT subscription_tier, subscription_status, last_payment_at
            FROM users WHERE id = %s
        """
        row = self._conn.execute(sql_text, (user_id,)).fetchone()
        if row is None:
            return None
        return Subscription(
            tier=SubscriptionTier(row[0]),
            status=SubscriptionStatus(row[1]),
            last_payment_at=row[2],
        )

    def set_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier,
        status: SubscriptionStatus,
        last_payment_at: datetime | None = None,
    ) -> None:
        sql_text = """
            UPDATE users
            SET subscription_tier = %s,
                subscription_status = %s,
                last_payment_at = COALESCE(%s, last_payment_at),
                updated_at = NOW()
            WHERE id = %s
        """
        self._conn.execute(sql_text, (tier.value, status.value, last_payment_at, user_id))

    def find_lapse_candidates(self, paid_before: datetime) -> list[str]:
        sql_text = """
            SELECT id FROM users
            WHERE last_payment_at < %s
              AND NOT (subscription_tier = 'FREE' AND subscription_status = 'INACTIVE')
            ORDER BY id
        """
        return [row[0] for row in self._conn.execute(sql_text, (paid_before,)).fetchall()]


class PostgresUsageRepository:
    """Implements UsageRepository protocol on one open connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def count_listings_since(self, user_id: str, since: datetime) -> int:
        sql_text = """
            SELECT
                (SELECT COUNT(*) FROM packages WHERE sender_id = %s AND created_at >= %s)
              + (SELECT COUNT(*) FROM trips WHERE traveler_id = %s AND created_at >= %s)
        """
        row = self._conn.execute(sql_text, (user_id, since, user_id, since)).fetchone()
        return int(row[0])


@dataclass
class PostgresSession:
    """Repositories bound to one open transaction."""

    documents: PostgresDocumentRepository
    users: PostgresUserRepository
    usage: PostgresUsageRepository


class PostgresTrustStore:
    """
    Implements TrustStore protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries for security.
    """

    def __init__(self, pool: ConnectionPool, statement_timeout_ms: int = 0) -> None:
        """
        Initialize store with connection pool.

        Args:
            pool: psycopg3 ConnectionPool for database connections
            statement_timeout_ms: Per-statement deadline, 0 disables it
        """
        self._pool = pool
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def transaction(self) -> Iterator[PostgresSession]:
        try:
            with self._pool.connection() as conn, conn.transaction():
                if self._statement_timeout_ms:
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(self._statement_timeout_ms),),
                    )
                yield PostgresSession(
                    documents=PostgresDocumentRepository(conn),
                    users=PostgresUserRepository(conn),
                    usage=PostgresUsageRepository(conn),
                )
        except (errors.QueryCanceled, PoolTimeout) as e:
            logger.warning("Store call timed out: %s", e)
            raise DependencyTimeout("Store call exceeded its deadline") from e
        except psycopg.Error as e:
            logger.error("Store call failed: %s", e)
            raise DependencyError("Store unavailable") from e


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: trustplane/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info(f"Running {len(sql_files)} migration(s)")

    for sql_file in sql_files:
        logger.info(f"Executing migration: {sql_file.name}")
        try:
            with pool.connection() as conn:
                conn.execute(sql_file.read_text())

            logger.info(f"Migration complete: {sql_file.name}")
        except Exception as e:
            logger.error(f"Migration failed: {sql_file.name} - {e}")
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
