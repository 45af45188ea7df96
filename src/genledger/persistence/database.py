"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema creation.
Ledger writes go through `Database.transaction()`, which serializes concurrent
writers: SQLite takes the write lock up front with BEGIN IMMEDIATE, PostgreSQL
relies on row locks taken with SELECT ... FOR UPDATE.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List, Tuple
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Cached balance projection, one row per user
CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY,
    balance TEXT NOT NULL DEFAULT '0.00',
    total_purchased TEXT NOT NULL DEFAULT '0.00',
    total_spent TEXT NOT NULL DEFAULT '0.00',
    currency TEXT NOT NULL DEFAULT 'MXN',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount TEXT NOT NULL,
    balance_before TEXT NOT NULL,
    balance_after TEXT NOT NULL,
    external_payment_id TEXT,
    payment_method TEXT,
    generation_id TEXT,
    description TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES accounts(user_id)
);

-- Billable units of work
CREATE TABLE IF NOT EXISTS generations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    generation_type TEXT NOT NULL,
    title TEXT,
    prompt TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    estimated_cost TEXT NOT NULL DEFAULT '0.00',
    realized_cost_mxn TEXT,
    realized_cost_usd TEXT,
    output_url TEXT,
    output_key TEXT,
    mime_type TEXT,
    api_model TEXT,
    generation_params TEXT,  -- JSON object
    error_message TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Settlement idempotency: one entry per (payment, kind)
CREATE UNIQUE INDEX IF NOT EXISTS uq_txn_payment_kind
    ON credit_transactions(external_payment_id, kind)
    WHERE external_payment_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_txn_user ON credit_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_txn_generation ON credit_transactions(generation_id);
CREATE INDEX IF NOT EXISTS idx_generations_user ON generations(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_generations_status ON generations(status);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY,
    balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
    total_purchased NUMERIC(14, 2) NOT NULL DEFAULT 0,
    total_spent NUMERIC(14, 2) NOT NULL DEFAULT 0,
    currency TEXT NOT NULL DEFAULT 'MXN',
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES accounts(user_id),
    kind TEXT NOT NULL,
    amount NUMERIC(14, 2) NOT NULL,
    balance_before NUMERIC(14, 2) NOT NULL,
    balance_after NUMERIC(14, 2) NOT NULL,
    external_payment_id TEXT,
    payment_method TEXT,
    generation_id TEXT,
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS generations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    generation_type TEXT NOT NULL,
    title TEXT,
    prompt TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    estimated_cost NUMERIC(14, 2) NOT NULL DEFAULT 0,
    realized_cost_mxn NUMERIC(14, 2),
    realized_cost_usd NUMERIC(14, 4),
    output_url TEXT,
    output_key TEXT,
    mime_type TEXT,
    api_model TEXT,
    generation_params JSONB,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_txn_payment_kind
    ON credit_transactions(external_payment_id, kind)
    WHERE external_payment_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_txn_user ON credit_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_txn_generation ON credit_transactions(generation_id);
CREATE INDEX IF NOT EXISTS idx_generations_user ON generations(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_generations_status ON generations(status);
"""


class UnitOfWork:
    """
    One atomic unit of database work.

    Queries are written with `?` placeholders and adapted to the active
    driver. Everything executed here commits or rolls back together.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self._conn = conn
        self.is_postgres = is_postgres

    @property
    def for_update(self) -> str:
        """Row-lock suffix for SELECTs that precede a write."""
        return " FOR UPDATE" if self.is_postgres else ""

    def _cursor(self, query: str, params: tuple) -> Any:
        if self.is_postgres:
            cursor = self._conn.cursor()
            cursor.execute(query.replace("?", "%s"), params)
            return cursor
        return self._conn.execute(query, params)

    def query(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = self._cursor(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def query_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self.query(query, params)
        return rows[0] if rows else None

    def execute(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the affected row count."""
        return self._cursor(query, params).rowcount


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as uow:
            uow.query("SELECT * FROM accounts WHERE user_id = ?", (user_id,))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///genledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "genledger.db"

    @property
    def integrity_errors(self) -> Tuple[type, ...]:
        """Driver exceptions raised on constraint violations."""
        if self.is_postgres:
            import psycopg2
            return (psycopg2.IntegrityError,)
        return (sqlite3.IntegrityError,)

    def _sqlite_conn(self) -> sqlite3.Connection:
        if getattr(self._local, "conn", None) is None:
            db_path = self._get_sqlite_path()
            # Autocommit mode: transactions are opened explicitly in transaction()
            conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _postgres_connect(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")
        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def transaction(self) -> Generator[UnitOfWork, None, None]:
        """
        Open a serialized unit of work.

        Commits when the block exits normally, rolls back on any exception.
        """
        if self.is_postgres:
            conn = self._postgres_connect()
            try:
                yield UnitOfWork(conn, is_postgres=True)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()
            return

        conn = self._sqlite_conn()
        if conn.in_transaction:
            raise RuntimeError("Nested transactions are not supported")
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield UnitOfWork(conn, is_postgres=False)
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.transaction() as uow:
                    uow.execute(POSTGRES_SCHEMA_SQL)
                    uow.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                conn = self._sqlite_conn()
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement in its own unit and return rows as dicts."""
        with self.transaction() as uow:
            return uow.query(query, params)

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
