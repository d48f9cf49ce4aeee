"""
Event sinks: the downstream systems that durably record events.

A sink must raise on failure so the retry layer can classify and retry.
"""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

from telemd.storage.schema import initialize_schema

from .models import Event

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Abstract interface for event sinks."""

    @abstractmethod
    async def record_event(self, event: Event) -> None:
        """Persist or forward one event. Raises on failure."""
        pass

    @abstractmethod
    async def ping(self) -> Dict[str, Any]:
        """Lightweight read used as a connectivity probe. Raises if unreachable."""
        pass


class InMemoryEventSink(EventSink):
    """Keeps recorded events in a list."""

    def __init__(self):
        self.events: List[Event] = []

    async def record_event(self, event: Event) -> None:
        self.events.append(event)

    async def ping(self) -> Dict[str, Any]:
        return {'recorded_events': len(self.events)}


class SQLiteEventSink(EventSink):
    """Writes events into the ``analytics_events`` table of a SQLite database."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self._initialize_database()

    def _initialize_database(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            initialize_schema(conn)

    def _insert(self, record: Dict[str, Any]) -> None:
        with sqlite3.connect(self.db_path, timeout=5.0) as conn:
            conn.execute(
                """
                INSERT INTO analytics_events (
                    session_id, event_type, ip_address, user_id, user_agent,
                    service_id, booking_id, event_type_id, duration,
                    properties, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record['session_id'],
                    record['event_type'],
                    record.get('ip_address'),
                    record.get('user_id'),
                    record.get('user_agent'),
                    record.get('service_id'),
                    record.get('booking_id'),
                    record.get('event_type_id'),
                    record.get('duration'),
                    json.dumps(record['properties']) if 'properties' in record else None,
                    record['created_at'],
                ),
            )
            conn.commit()

    async def record_event(self, event: Event) -> None:
        await asyncio.to_thread(self._insert, event.to_record())

    def _count(self) -> int:
        with sqlite3.connect(self.db_path, timeout=5.0) as conn:
            row = conn.execute("SELECT COUNT(*) FROM analytics_events").fetchone()
            return int(row[0])

    async def ping(self) -> Dict[str, Any]:
        count = await asyncio.to_thread(self._count)
        return {'recorded_events': count}
