"""
Operational API for the analytics layer.

Exposes queue, rate limit, health and retention administration over HTTP
for operators, plus a rate-limited event ingestion endpoint.

Flask views run in the web server's threads while the components live on
the service's event loop; coroutines are submitted to that loop when the
service is started and run on a private loop otherwise.
"""

import asyncio
import functools
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Flask, Response, jsonify, make_response, request
from prometheus_client import CONTENT_TYPE_LATEST
import structlog

from telemd.exceptions import (
    CleanupAlreadyRunningError,
    InvalidPolicyError,
    PolicyNotFoundError,
)
from telemd.pipeline.models import Batch, Event, EventType
from telemd.security.rate_limiter import (
    UNKNOWN_ADDRESS,
    RateLimiter,
    extract_client_ip,
    get_identifier,
)
from telemd.storage.retention_models import RetentionPolicy

logger = structlog.get_logger(__name__)

COROUTINE_TIMEOUT_SECONDS = 60.0


def run_coroutine(service, coro, timeout: float = COROUTINE_TIMEOUT_SECONDS):
    """Run ``coro`` on the service loop if it is running, otherwise on a fresh loop."""
    loop = getattr(service, 'loop', None)
    if loop is not None and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout)
    return asyncio.run(coro)


def rate_limited(limiter: RateLimiter,
                 user_resolver: Optional[Callable[[], Optional[str]]] = None):
    """
    Decorator for Flask views that applies ``limiter`` per caller.

    Rejected requests get HTTP 429 with a ``Retry-After`` header; allowed
    requests carry ``X-RateLimit-*`` headers.
    """
    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            user_id = user_resolver() if user_resolver else None
            identifier = get_identifier(user_id, request.headers, request.remote_addr)
            result = limiter.check_rate_limit(identifier)
            headers = {
                'X-RateLimit-Limit': str(limiter.config.max_requests),
                'X-RateLimit-Remaining': str(result.remaining),
                'X-RateLimit-Reset': str(int(result.reset_time)),
            }

            if not result.allowed:
                retry_after = result.retry_after_seconds()
                response = jsonify({
                    'error': 'Too many requests',
                    'retry_after': retry_after,
                })
                response.status_code = 429
                response.headers['Retry-After'] = str(retry_after)
                response.headers.extend(headers)
                return response

            response = make_response(view(*args, **kwargs))
            response.headers.extend(headers)
            return response
        return wrapper
    return decorator


def _batch_to_dict(batch: Batch) -> Dict[str, Any]:
    return {
        'id': batch.id,
        'event_count': len(batch),
        'retry_count': batch.retry_count,
        'created_at': batch.created_at.isoformat(),
    }


def _flush_result_to_dict(result) -> Dict[str, Any]:
    return {
        'status': result.status.value,
        'batch_id': result.batch_id,
        'event_count': result.event_count,
        'attempts': result.attempts,
        'error': result.error,
    }


def _event_from_request(data: Dict[str, Any], ip_address: str) -> Event:
    for key in ('session_id', 'event_type'):
        if not data.get(key):
            raise ValueError(f'{key} is required')
    properties = data.get('properties') or {}
    if not isinstance(properties, dict):
        raise ValueError('properties must be an object')
    return Event.create(
        session_id=str(data['session_id']),
        event_type=EventType(data['event_type']),
        ip_address=ip_address,
        user_id=data.get('user_id'),
        user_agent=request.headers.get('User-Agent'),
        properties=properties,
        service_id=data.get('service_id'),
        booking_id=data.get('booking_id'),
        event_type_id=data.get('event_type_id'),
        duration=data.get('duration'),
    )


class OpsAPI:
    """View functions bound to one AnalyticsService."""

    def __init__(self, service):
        self.service = service

    def _run(self, coro):
        return run_coroutine(self.service, coro)

    # Queue

    def get_queue_stats(self):
        return jsonify(self.service.batch_processor.get_stats())

    def flush_queue(self):
        results = self._run(self.service.batch_processor.flush())
        return jsonify({'results': [_flush_result_to_dict(r) for r in results]})

    def get_dead_letters(self):
        batches = self.service.batch_processor.get_dead_letters()
        return jsonify({'dead_letters': [_batch_to_dict(b) for b in batches]})

    def requeue_dead_letters(self):
        requeued = self._run(self.service.batch_processor.requeue_dead_letters())
        logger.info("Dead letters requeued via API", events=requeued)
        return jsonify({'success': True, 'requeued_events': requeued})

    # Rate limiting

    def get_rate_limit_stats(self):
        return jsonify(self.service.rate_limiter.get_stats())

    def reset_rate_limit(self):
        data = request.get_json(silent=True) or {}
        identifier = data.get('identifier')
        if not identifier:
            return jsonify({'error': 'identifier is required'}), 400

        if not self.service.rate_limiter.reset_rate_limit(identifier):
            return jsonify({'error': f'No rate limit entry for {identifier}'}), 404

        logger.info("Rate limit reset via API", identifier=identifier)
        return jsonify({'success': True, 'identifier': identifier})

    # Health

    def get_health(self):
        status = self.service.health_monitor.get_last_health_check()
        if status is None:
            return jsonify({'status': 'unknown', 'message': 'No health check has run yet'}), 404
        return jsonify(status.to_dict())

    def check_health(self):
        status = self._run(self.service.health_monitor.check_now())
        code = 503 if status.overall.value == 'critical' else 200
        return jsonify(status.to_dict()), code

    # Retention

    def get_policies(self):
        policies = self.service.retention_manager.get_retention_policies()
        return jsonify({'policies': [p.to_dict() for p in policies]})

    def add_policy(self):
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400

        try:
            policy = RetentionPolicy(
                name=data['name'],
                table=data['table'],
                retention_days=int(data['retention_days']),
                date_column=data.get('date_column', 'created_at'),
                enabled=bool(data.get('enabled', True)),
            )
            self.service.retention_manager.add_retention_policy(policy)
        except KeyError as e:
            return jsonify({'error': f'{e.args[0]} is required'}), 400
        except (ValueError, InvalidPolicyError) as e:
            return jsonify({'error': str(e)}), 400

        return jsonify({'success': True, 'policy': policy.to_dict()}), 201

    def update_policy(self, name: str):
        data = request.get_json(silent=True) or {}
        retention_days = data.get('retention_days')
        enabled = data.get('enabled')

        try:
            updated = self.service.retention_manager.update_retention_policy(
                name,
                retention_days=int(retention_days) if retention_days is not None else None,
                enabled=bool(enabled) if enabled is not None else None,
            )
        except (ValueError, InvalidPolicyError) as e:
            return jsonify({'error': str(e)}), 400

        if not updated:
            return jsonify({'error': f'Retention policy not found: {name}'}), 404
        policy = self.service.retention_manager.get_policy(name)
        return jsonify({'success': True, 'policy': policy.to_dict()})

    def remove_policy(self, name: str):
        if not self.service.retention_manager.remove_retention_policy(name):
            return jsonify({'error': f'Retention policy not found: {name}'}), 404
        return jsonify({'success': True, 'name': name})

    def force_cleanup(self):
        data = request.get_json(silent=True) or {}
        names = data.get('policies')

        try:
            results = self._run(self.service.retention_manager.force_cleanup(names))
        except CleanupAlreadyRunningError as e:
            return jsonify({'error': str(e)}), 409
        except PolicyNotFoundError as e:
            return jsonify({'error': str(e)}), 404

        return jsonify({
            'success': all(r.success for r in results),
            'results': [r.to_dict() for r in results],
        })

    def estimate_cleanup(self):
        estimates = self._run(self.service.retention_manager.estimate_cleanup_impact())
        return jsonify({'estimates': [e.to_dict() for e in estimates]})

    def get_retention_stats(self):
        return jsonify(self.service.retention_manager.get_retention_stats().to_dict())

    def get_audit_trail(self):
        limit = request.args.get('limit', 50, type=int)
        return jsonify({'entries': self.service.retention_manager.audit.read_audit_trail(limit)})

    def erase_user_data(self):
        data = request.get_json(silent=True) or {}
        user_id = data.get('user_id')
        if not user_id:
            return jsonify({'error': 'user_id is required'}), 400

        result = self._run(self.service.retention_manager.erase_user_data(user_id))
        code = 200 if result.success else 500
        return jsonify({
            'success': result.success,
            'deleted_records': result.deleted_records,
            'total_deleted': result.total_deleted,
            'errors': result.errors,
        }), code

    # Metrics

    def metrics(self):
        if self.service.metrics is None:
            return jsonify({'error': 'Metrics are disabled'}), 404
        self._run(self.service.metrics.collect())
        return Response(self.service.metrics.generate_latest(), content_type=CONTENT_TYPE_LATEST)

    # Ingestion

    def ingest_event(self):
        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400
        if not isinstance(data, dict):
            return jsonify({'error': 'Request body must be a JSON object'}), 400

        ip_address = extract_client_ip(request.headers)
        if ip_address == UNKNOWN_ADDRESS and request.remote_addr:
            ip_address = request.remote_addr
        try:
            event = _event_from_request(data, ip_address)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400

        results = self._run(self.service.batch_processor.add_event(event))
        return jsonify({
            'accepted': True,
            'results': [_flush_result_to_dict(r) for r in results],
        }), 202


def create_ops_api(service, url_prefix: str = '/analytics',
                   user_resolver: Optional[Callable[[], Optional[str]]] = None) -> Blueprint:
    """
    Create the operational blueprint for ``service``.

    Args:
        service: AnalyticsService instance
        url_prefix: Mount point of the blueprint
        user_resolver: Returns the authenticated user id of the current
            request, used as the rate-limit identity when present

    Returns:
        Configured Flask Blueprint
    """
    api = OpsAPI(service)
    bp = Blueprint('analytics_ops', __name__, url_prefix=url_prefix)

    bp.add_url_rule('/queue', 'get_queue_stats', api.get_queue_stats, methods=['GET'])
    bp.add_url_rule('/queue/flush', 'flush_queue', api.flush_queue, methods=['POST'])
    bp.add_url_rule('/queue/dead-letters', 'get_dead_letters', api.get_dead_letters, methods=['GET'])
    bp.add_url_rule('/queue/dead-letters/requeue', 'requeue_dead_letters',
                    api.requeue_dead_letters, methods=['POST'])

    bp.add_url_rule('/rate-limit', 'get_rate_limit_stats', api.get_rate_limit_stats, methods=['GET'])
    bp.add_url_rule('/rate-limit/reset', 'reset_rate_limit', api.reset_rate_limit, methods=['POST'])

    bp.add_url_rule('/health', 'get_health', api.get_health, methods=['GET'])
    bp.add_url_rule('/health/check', 'check_health', api.check_health, methods=['GET', 'POST'])

    bp.add_url_rule('/retention/policies', 'get_policies', api.get_policies, methods=['GET'])
    bp.add_url_rule('/retention/policies', 'add_policy', api.add_policy, methods=['POST'])
    bp.add_url_rule('/retention/policies/<name>', 'update_policy', api.update_policy, methods=['PATCH'])
    bp.add_url_rule('/retention/policies/<name>', 'remove_policy', api.remove_policy, methods=['DELETE'])
    bp.add_url_rule('/retention/cleanup', 'force_cleanup', api.force_cleanup, methods=['POST'])
    bp.add_url_rule('/retention/estimate', 'estimate_cleanup', api.estimate_cleanup, methods=['GET'])
    bp.add_url_rule('/retention/stats', 'get_retention_stats', api.get_retention_stats, methods=['GET'])
    bp.add_url_rule('/retention/audit', 'get_audit_trail', api.get_audit_trail, methods=['GET'])
    bp.add_url_rule('/retention/erasure', 'erase_user_data', api.erase_user_data, methods=['POST'])

    bp.add_url_rule('/metrics', 'metrics', api.metrics, methods=['GET'])

    ingest = api.ingest_event
    if service.config.rate_limit.enabled:
        ingest = rate_limited(service.rate_limiter, user_resolver)(ingest)
    bp.add_url_rule('/events', 'ingest_event', ingest, methods=['POST'])

    return bp


def create_app(service, **kwargs) -> Flask:
    """Flask application serving the operational API."""
    app = Flask(__name__)
    app.register_blueprint(create_ops_api(service, **kwargs))
    return app
