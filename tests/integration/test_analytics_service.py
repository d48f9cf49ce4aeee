"""
Integration tests for the analytics service lifecycle.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from telemd.config.analytics_config import (
    AnalyticsConfig,
    DataRetentionConfig,
    RateLimitConfig,
    TelemdConfig,
)
from telemd.exceptions import RateLimitExceededError
from telemd.pipeline.models import Event, EventType
from telemd.pipeline.sinks import InMemoryEventSink
from telemd.service import AnalyticsService
from telemd.storage.retention_store import SQLiteRetentionStore
from telemd.storage.schema import CATEGORY_TABLES


def make_event(n: int = 0, **properties) -> Event:
    return Event.create(
        session_id=f'session-{n}',
        event_type=EventType.PAGE_VIEW,
        ip_address='203.0.113.9',
        properties=properties,
    )


@pytest.fixture
def config(tmp_path):
    return TelemdConfig(
        environment='test',
        database_path=str(tmp_path / 'analytics.db'),
        analytics=AnalyticsConfig(batch_size=10),
        rate_limit=RateLimitConfig(max_requests=2),
        # Never fires
        retention=DataRetentionConfig(cleanup_cron='0 0 31 2 *'),
    )


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def service(config, sink):
    return AnalyticsService(config, sink=sink,
                            retention_store=SQLiteRetentionStore(config.database_path))


class TestAnalyticsService:

    @pytest.mark.asyncio
    async def test_start_and_stop_background_jobs(self, service):
        await service.start()

        assert service.is_started
        assert service.batch_processor.is_running
        assert service.health_monitor.is_running
        assert service.retention_manager.is_scheduled

        await service.stop()

        assert not service.is_started
        assert not service.batch_processor.is_running
        assert not service.health_monitor.is_running
        assert not service.retention_manager.is_scheduled

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self, service, sink):
        await service.start()
        for n in range(3):
            assert await service.track_event(make_event(n)) == []

        await service.stop()

        assert [e.session_id for e in sink.events] == ['session-0', 'session-1', 'session-2']
        assert service.batch_processor.get_stats()['queue_size'] == 0

    @pytest.mark.asyncio
    async def test_full_batch_delivered_immediately(self, service, sink):
        results = []
        for n in range(10):
            results.extend(await service.track_event(make_event(n)))

        assert len(results) == 1
        assert results[0].delivered
        assert len(sink.events) == 10

    @pytest.mark.asyncio
    async def test_track_event_rate_limited_per_identifier(self, service):
        await service.track_event(make_event(), identifier='user:1')
        await service.track_event(make_event(), identifier='user:1')

        with pytest.raises(RateLimitExceededError) as exc_info:
            await service.track_event(make_event(), identifier='user:1')

        assert exc_info.value.retry_after_seconds > 0
        # Other callers and anonymous producers are unaffected
        await service.track_event(make_event(), identifier='user:2')
        await service.track_event(make_event())

    @pytest.mark.asyncio
    async def test_rate_limiting_disabled(self, config, sink):
        config.rate_limit.enabled = False
        service = AnalyticsService(config, sink=sink,
                                   retention_store=SQLiteRetentionStore(config.database_path))

        for _ in range(5):
            await service.track_event(make_event(), identifier='user:1')

        assert service.rate_limiter.get_stats()['total_identifiers'] == 0

    @pytest.mark.asyncio
    async def test_privacy_filter_applied_before_delivery(self, service, sink):
        await service.track_event(make_event(email='a@example.com', plan='pro'))
        await service.batch_processor.flush(drain=True)

        assert sink.events[0].properties_dict == {'plan': 'pro'}

    @pytest.mark.asyncio
    async def test_overview(self, service):
        await service.track_event(make_event())
        await service.health_monitor.check_now()

        overview = await service.get_overview()

        assert overview['environment'] == 'test'
        assert overview['queue']['queue_size'] == 1
        assert overview['health']['checks']
        assert overview['retention']['total_policies'] == 5

    @pytest.mark.asyncio
    async def test_metrics_wired_to_components(self, service):
        await service.track_event(make_event(), identifier='user:1')

        registry = service.metrics.get_registry()
        assert registry.get_sample_value('telemd_events_received_total') == 1.0
        assert registry.get_sample_value('telemd_rate_limit_decisions_total',
                                         {'outcome': 'allowed'}) == 1.0


class TestDefaultDatabase:

    @pytest.mark.asyncio
    async def test_every_default_policy_succeeds(self, tmp_path):
        db_path = str(tmp_path / 'fresh' / 'analytics.db')
        service = AnalyticsService(TelemdConfig(database_path=db_path))
        old = (datetime.now(timezone.utc) - timedelta(days=400)).isoformat()
        with sqlite3.connect(db_path) as conn:
            for table in CATEGORY_TABLES:
                conn.execute(f"INSERT INTO {table} (user_id, created_at) VALUES (?, ?)",
                             ('user-1', old))
            conn.commit()

        results = await service.retention_manager.run_cleanup()

        assert len(results) == 5
        assert all(r.success for r in results), [r.error for r in results]
        deleted = {r.policy: r.deleted_records for r in results}
        assert deleted['Analytics Events'] == 0
        assert deleted['Session Data'] == 1
        assert deleted['Health Check Logs'] == 1

    @pytest.mark.asyncio
    async def test_erasure_covers_category_tables(self, tmp_path):
        db_path = str(tmp_path / 'analytics.db')
        service = AnalyticsService(TelemdConfig(database_path=db_path))
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(db_path) as conn:
            conn.execute("INSERT INTO analytics_errors (user_id, created_at) VALUES (?, ?)",
                         ('user-1', now))
            conn.commit()

        result = await service.retention_manager.erase_user_data('user-1')

        assert result.success
        assert result.deleted_records['analytics_errors'] == 1
        assert set(result.deleted_records) == {'analytics_events'} | set(CATEGORY_TABLES)
