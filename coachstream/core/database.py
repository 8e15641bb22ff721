"""
Centralized Database Module

Single point of access for the engine's SQLite storage. Owns schema creation
and thin execute/fetch/insert/update/delete helpers over SQLAlchemy.

Tables written by the engine: traces, insights, patterns, conversations.
Tables read-only at request time: personas, user_personas, health_summaries,
knowledge_snippets, domain_metrics.
"""

import json
import logging
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from .config import get_config

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS traces (
        trace_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        coach_id TEXT NOT NULL,
        status TEXT NOT NULL,
        user_message TEXT,
        provider TEXT,
        model TEXT,
        routing TEXT,
        loaded_modules TEXT,
        prompt_snapshot TEXT,
        output_snapshot TEXT,
        error TEXT,
        first_token_ms INTEGER,
        total_tokens INTEGER,
        duration_ms INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_traces_user ON traces(user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS insights (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        category TEXT NOT NULL,
        subcategory TEXT,
        insight TEXT NOT NULL,
        raw_quote TEXT,
        confidence REAL NOT NULL DEFAULT 0.8,
        importance TEXT NOT NULL DEFAULT 'medium',
        source TEXT NOT NULL DEFAULT 'chat',
        source_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        is_current INTEGER NOT NULL DEFAULT 1,
        superseded_by TEXT,
        superseded_at TEXT,
        reference_count INTEGER NOT NULL DEFAULT 1,
        embedding TEXT,
        extracted_at TEXT NOT NULL,
        last_relevant_at TEXT NOT NULL,
        expires_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_insights_user ON insights(user_id, is_active, category)",
    """
    CREATE TABLE IF NOT EXISTS patterns (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        pattern_type TEXT NOT NULL,
        description TEXT NOT NULL,
        insight_ids TEXT NOT NULL DEFAULT '[]',
        confidence REAL NOT NULL,
        suggestion TEXT,
        is_addressed INTEGER NOT NULL DEFAULT 0,
        addressed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_patterns_user ON patterns(user_id, is_addressed)",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        coach_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        trace_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_lookup ON conversations(user_id, coach_id, id DESC)",
    """
    CREATE TABLE IF NOT EXISTS personas (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        coach_id TEXT,
        description TEXT,
        energy INTEGER NOT NULL DEFAULT 5,
        directness INTEGER NOT NULL DEFAULT 5,
        humor INTEGER NOT NULL DEFAULT 5,
        warmth INTEGER NOT NULL DEFAULT 5,
        depth INTEGER NOT NULL DEFAULT 5,
        challenge INTEGER NOT NULL DEFAULT 5,
        opinion INTEGER NOT NULL DEFAULT 5,
        phrases TEXT NOT NULL DEFAULT '[]',
        phrase_frequency INTEGER NOT NULL DEFAULT 0,
        dialect TEXT,
        language_style TEXT,
        example_responses TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_personas (
        user_id TEXT PRIMARY KEY,
        persona_id TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS health_summaries (
        user_id TEXT PRIMARY KEY,
        summary TEXT NOT NULL,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_snippets (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        keywords TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domain_metrics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        value REAL NOT NULL,
        unit TEXT,
        status TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_domain_metrics_user ON domain_metrics(user_id, name, recorded_at DESC)",
]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime the way every timestamp column stores it."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def loads(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class Database:
    """SQLite storage for traces, insights, patterns and the read-only context tables."""

    def __init__(self, db_path: Optional[Path] = None, in_memory: bool = False):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to database.path from config
            in_memory: If True, creates an in-memory database (useful for testing)
        """
        if in_memory:
            self.db_path = ":memory:"
            # StaticPool keeps the single in-memory connection alive
            self.engine = create_engine(
                "sqlite:///:memory:",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool
            )
            # Loaders run in worker threads; one statement at a time on the shared connection
            self._lock = threading.RLock()
        else:
            self.db_path = Path(db_path or get_config().database.path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                connect_args={"check_same_thread": False},
            )
            self._lock = nullcontext()

        self._initialize_schema()

    def _initialize_schema(self):
        """Create database tables if they don't exist."""
        try:
            with self.engine.connect() as conn:
                for statement in SCHEMA:
                    conn.execute(text(statement))
                conn.commit()
                logger.info(f"[DB] Schema initialized: {self.db_path}")
        except Exception as e:
            logger.error(f"[DB] Error initializing schema: {e}")
            raise

    @contextmanager
    def get_connection(self):
        """
        Get a database connection context manager.

        Usage:
            with db.get_connection() as conn:
                result = conn.execute(text("SELECT * FROM traces"))
        """
        with self._lock:
            conn = self.engine.connect()
            try:
                yield conn
            finally:
                conn.close()

    def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Execute a write statement and return the affected row count."""
        with self.get_connection() as conn:
            result = conn.execute(text(sql), params or {})
            conn.commit()
            return result.rowcount

    def fetchall(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Execute a query and fetch all rows as dictionaries."""
        with self.get_connection() as conn:
            result = conn.execute(text(sql), params or {})
            return [dict(row) for row in result.mappings().all()]

    def fetchone(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute a query and fetch one row as a dictionary (or None)."""
        with self.get_connection() as conn:
            result = conn.execute(text(sql), params or {})
            row = result.mappings().first()
            return dict(row) if row is not None else None

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """
        Insert a row into a table.

        Args:
            table: Table name
            data: Dictionary of column: value pairs

        Returns:
            Row id of the inserted row
        """
        columns = ", ".join(data.keys())
        placeholders = ", ".join(f":{key}" for key in data.keys())
        sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"

        with self.get_connection() as conn:
            result = conn.execute(text(sql), data)
            conn.commit()
            return result.lastrowid

    def update(self, table: str, data: Dict[str, Any], where: str, where_params: Dict[str, Any]) -> int:
        """
        Update rows in a table.

        Args:
            table: Table name
            data: Dictionary of column: value pairs to update
            where: WHERE clause (without the WHERE keyword)
            where_params: Parameters for the WHERE clause

        Returns:
            Number of rows updated
        """
        set_clause = ", ".join(f"{key} = :{key}" for key in data.keys())
        sql = f"UPDATE {table} SET {set_clause} WHERE {where}"

        with self.get_connection() as conn:
            result = conn.execute(text(sql), {**data, **where_params})
            conn.commit()
            return result.rowcount

    def delete(self, table: str, where: str, where_params: Dict[str, Any]) -> int:
        """Delete rows from a table and return how many went."""
        sql = f"DELETE FROM {table} WHERE {where}"

        with self.get_connection() as conn:
            result = conn.execute(text(sql), where_params)
            conn.commit()
            return result.rowcount

    def close(self):
        """Dispose of the engine."""
        self.engine.dispose()
