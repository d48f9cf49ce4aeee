"""
Storage boundary used by the retention manager.

Rows are aged by an ISO-8601 UTC text column, compared lexically against
the cutoff's ``isoformat()``.
"""

import asyncio
import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, List, Sequence

from telemd.exceptions import StorageError

from .schema import initialize_schema

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

# SQLite builds may cap bound parameters at 999
MAX_BOUND_PARAMETERS = 500


def quote_identifier(name: str) -> str:
    """Quote a table or column name, rejecting anything that is not a plain identifier."""
    if not _IDENTIFIER.match(name or ''):
        raise StorageError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


class RetentionStore(ABC):
    """Abstract interface for retention storage operations."""

    @abstractmethod
    async def select_expired_ids(self, table: str, date_column: str,
                                 cutoff: datetime, limit: int) -> List[Any]:
        """Ids of up to ``limit`` rows older than ``cutoff``, oldest first."""
        pass

    @abstractmethod
    async def delete_ids(self, table: str, ids: Sequence[Any]) -> int:
        """Delete exactly the given rows. Returns the number deleted."""
        pass

    @abstractmethod
    async def count_expired(self, table: str, date_column: str, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def count_all(self, table: str) -> int:
        pass

    @abstractmethod
    async def select_ids_matching(self, table: str, column: str, value: Any, limit: int) -> List[Any]:
        """Ids of up to ``limit`` rows whose ``column`` equals ``value``."""
        pass

    @abstractmethod
    async def has_column(self, table: str, column: str) -> bool:
        pass

    @abstractmethod
    async def ping(self) -> None:
        """Raise if storage is unreachable."""
        pass


class SQLiteRetentionStore(RetentionStore):
    """Retention store backed by a SQLite database file."""

    def __init__(self, db_path: str, timeout: float = 5.0, create_schema: bool = True):
        self.db_path = Path(db_path)
        self.timeout = timeout
        if create_schema:
            self._initialize_database()

    def _initialize_database(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                initialize_schema(conn)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Cannot initialize database {self.db_path}: {e}") from e

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self.timeout)

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def _select_expired_ids(self, table: str, date_column: str, cutoff: datetime, limit: int) -> List[Any]:
        query = (
            f"SELECT id FROM {quote_identifier(table)} "
            f"WHERE {quote_identifier(date_column)} < ? "
            f"ORDER BY {quote_identifier(date_column)} ASC LIMIT ?"
        )
        with self._connect() as conn:
            rows = conn.execute(query, (cutoff.isoformat(), limit)).fetchall()
        return [row[0] for row in rows]

    async def select_expired_ids(self, table, date_column, cutoff, limit):
        return await self._run(self._select_expired_ids, table, date_column, cutoff, limit)

    def _delete_ids(self, table: str, ids: Sequence[Any]) -> int:
        if not ids:
            return 0
        deleted = 0
        with self._connect() as conn:
            for start in range(0, len(ids), MAX_BOUND_PARAMETERS):
                part = list(ids[start:start + MAX_BOUND_PARAMETERS])
                placeholders = ','.join('?' for _ in part)
                cursor = conn.execute(
                    f"DELETE FROM {quote_identifier(table)} WHERE id IN ({placeholders})",
                    part,
                )
                deleted += cursor.rowcount
            conn.commit()
        return deleted

    async def delete_ids(self, table, ids):
        return await self._run(self._delete_ids, table, ids)

    def _count(self, query: str, params: tuple) -> int:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row[0]) if row else 0

    async def count_expired(self, table, date_column, cutoff):
        query = (
            f"SELECT COUNT(*) FROM {quote_identifier(table)} "
            f"WHERE {quote_identifier(date_column)} < ?"
        )
        return await self._run(self._count, query, (cutoff.isoformat(),))

    async def count_all(self, table):
        return await self._run(self._count, f"SELECT COUNT(*) FROM {quote_identifier(table)}", ())

    def _select_ids_matching(self, table: str, column: str, value: Any, limit: int) -> List[Any]:
        query = (
            f"SELECT id FROM {quote_identifier(table)} "
            f"WHERE {quote_identifier(column)} = ? LIMIT ?"
        )
        with self._connect() as conn:
            rows = conn.execute(query, (value, limit)).fetchall()
        return [row[0] for row in rows]

    async def select_ids_matching(self, table, column, value, limit):
        return await self._run(self._select_ids_matching, table, column, value, limit)

    def _has_column(self, table: str, column: str) -> bool:
        with self._connect() as conn:
            rows = conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
        return any(row[1] == column for row in rows)

    async def has_column(self, table, column):
        return await self._run(self._has_column, table, column)

    def _ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    async def ping(self) -> None:
        await self._run(self._ping)
