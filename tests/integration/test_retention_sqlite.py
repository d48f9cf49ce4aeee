"""
Integration tests for retention cleanup against a real SQLite database.
"""

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from telemd.config.analytics_config import DataRetentionConfig
from telemd.exceptions import StorageError
from telemd.storage.retention_manager import DataRetentionManager
from telemd.storage.retention_models import RetentionPolicy
from telemd.storage.retention_store import SQLiteRetentionStore, quote_identifier

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


async def no_sleep(_seconds):
    return None


def create_database(db_path: Path) -> None:
    """Two tables: events aged over 40 days, errors aged over 10 days."""
    with sqlite3.connect(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE analytics_events (
                id INTEGER PRIMARY KEY,
                session_id TEXT NOT NULL,
                user_id TEXT,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE analytics_errors (
                id INTEGER PRIMARY KEY,
                message TEXT,
                created_at TEXT NOT NULL
            )
        """)

        for day in range(40):
            created = (NOW - timedelta(days=day, hours=1)).isoformat()
            for n in range(5):
                cursor.execute(
                    "INSERT INTO analytics_events (session_id, user_id, created_at) VALUES (?, ?, ?)",
                    (f"s-{day}-{n}", 'user-7' if n == 0 else f"user-{n}", created),
                )
        for day in range(10):
            cursor.execute(
                "INSERT INTO analytics_errors (message, created_at) VALUES (?, ?)",
                (f"error {day}", (NOW - timedelta(days=day, hours=1)).isoformat()),
            )
        conn.commit()


def count_rows(db_path: Path, table: str, where: str = '1=1', params=()) -> int:
    with sqlite3.connect(db_path) as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / 'analytics.db'
    create_database(path)
    return path


@pytest.fixture
def policies():
    return [
        RetentionPolicy('Analytics Events', 'analytics_events', 30),
        RetentionPolicy('Error Logs', 'analytics_errors', 7),
    ]


def make_manager(db_path, policies, **config):
    config.setdefault('chunk_size', 7)
    config.setdefault('pause_between_chunks_ms', 0)
    return DataRetentionManager(
        SQLiteRetentionStore(str(db_path)),
        DataRetentionConfig(**config),
        policies=policies,
        sleep=no_sleep,
        clock=lambda: NOW,
    )


class TestSQLiteRetention:

    @pytest.mark.asyncio
    async def test_cleanup_deletes_only_expired_rows(self, db_path, policies):
        manager = make_manager(db_path, policies)

        results = await manager.run_cleanup()

        # Days 30..39 are older than 30 days: 10 days x 5 rows
        assert results[0].deleted_records == 50
        assert results[0].chunks == 8  # ceil(50 / 7)
        # Days 7..9 are older than 7 days
        assert results[1].deleted_records == 3
        assert count_rows(db_path, 'analytics_events') == 150
        assert count_rows(db_path, 'analytics_errors') == 7

        cutoff = (NOW - timedelta(days=30)).isoformat()
        assert count_rows(db_path, 'analytics_events', 'created_at < ?', (cutoff,)) == 0

    @pytest.mark.asyncio
    async def test_second_run_finds_nothing(self, db_path, policies):
        manager = make_manager(db_path, policies)
        await manager.run_cleanup()

        results = await manager.run_cleanup()

        assert [r.deleted_records for r in results] == [0, 0]
        assert manager.get_retention_stats().total_records_deleted == 53

    @pytest.mark.asyncio
    async def test_estimate_matches_cleanup(self, db_path, policies):
        manager = make_manager(db_path, policies)

        estimates = await manager.estimate_cleanup_impact()
        results = await manager.run_cleanup()

        assert [e.estimated_deletions for e in estimates] == [r.deleted_records for r in results]
        assert estimates[0].table_size == 200

    @pytest.mark.asyncio
    async def test_missing_table_fails_only_its_policy(self, db_path, policies):
        policies.insert(0, RetentionPolicy('Archive', 'analytics_archive', 1))
        manager = make_manager(db_path, policies)

        results = await manager.run_cleanup()

        assert not results[0].success
        assert 'no such table' in results[0].error
        assert results[1].success and results[1].deleted_records == 50

    @pytest.mark.asyncio
    async def test_erasure_removes_user_rows(self, db_path, policies):
        manager = make_manager(db_path, policies)

        result = await manager.erase_user_data('user-7')

        assert result.success
        assert result.deleted_records == {'analytics_events': 40}
        assert count_rows(db_path, 'analytics_events', 'user_id = ?', ('user-7',)) == 0
        assert count_rows(db_path, 'analytics_events') == 160

    @pytest.mark.asyncio
    async def test_audit_trail_written(self, db_path, policies, tmp_path):
        manager = make_manager(db_path, policies, audit_log_dir=str(tmp_path / 'audit'))

        await manager.force_cleanup(['Error Logs'])

        entries = manager.audit.read_audit_trail()
        assert len(entries) == 1
        assert entries[0]['trigger'] == 'manual'
        assert entries[0]['total_records_deleted'] == 3


class TestSQLiteRetentionStore:

    @pytest.mark.asyncio
    async def test_select_is_oldest_first(self, db_path):
        store = SQLiteRetentionStore(str(db_path))

        ids = await store.select_expired_ids('analytics_errors', 'created_at', NOW, 3)

        # Rows were inserted newest first
        assert ids == [10, 9, 8]

    @pytest.mark.asyncio
    async def test_delete_large_id_list(self, db_path):
        store = SQLiteRetentionStore(str(db_path))
        ids = await store.select_expired_ids('analytics_events', 'created_at', NOW, 1000)

        deleted = await store.delete_ids('analytics_events', ids)

        assert deleted == 200
        assert await store.count_all('analytics_events') == 0

    @pytest.mark.asyncio
    async def test_has_column(self, db_path):
        store = SQLiteRetentionStore(str(db_path))

        assert await store.has_column('analytics_events', 'user_id')
        assert not await store.has_column('analytics_errors', 'user_id')

    @pytest.mark.asyncio
    async def test_sqlite_errors_become_storage_errors(self, db_path):
        store = SQLiteRetentionStore(str(db_path))

        with pytest.raises(StorageError):
            await store.count_all('does_not_exist')

    @pytest.mark.asyncio
    async def test_ping(self, db_path):
        await SQLiteRetentionStore(str(db_path)).ping()


class TestQuoteIdentifier:

    def test_plain_identifier(self):
        assert quote_identifier('analytics_events') == '"analytics_events"'

    @pytest.mark.parametrize('name', ['', '1table', 'events; DROP TABLE x', 'a"b', 'a.b'])
    def test_rejects_unsafe_names(self, name):
        with pytest.raises(StorageError):
            quote_identifier(name)
