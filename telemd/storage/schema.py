"""
SQLite schema for the analytics database.

``analytics_events`` is written by the event sink; the other tables hold
the per-category records that retention policies age out. Every table has
an integer ``id``, an ISO-8601 UTC ``created_at`` and a ``user_id`` for
erasure requests.
"""

import sqlite3
from typing import List

CATEGORY_TABLES: List[str] = [
    'analytics_sessions',
    'analytics_errors',
    'batch_processing_logs',
    'health_check_logs',
]

EVENTS_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS analytics_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        ip_address TEXT,
        user_id TEXT,
        user_agent TEXT,
        service_id TEXT,
        booking_id TEXT,
        event_type_id INTEGER,
        duration REAL,
        properties TEXT,
        created_at TEXT NOT NULL
    )
"""

CATEGORY_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,
        user_id TEXT,
        payload TEXT,
        created_at TEXT NOT NULL
    )
"""


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create any missing analytics tables and their ``created_at`` indexes."""
    cursor = conn.cursor()
    cursor.execute(EVENTS_TABLE_DDL)
    for table in ['analytics_events'] + CATEGORY_TABLES:
        if table != 'analytics_events':
            cursor.execute(CATEGORY_TABLE_DDL.format(table=table))
        cursor.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table} (created_at)"
        )
    conn.commit()
