#!/usr/bin/env python3
"""
Flask API for the fantasy football news pipeline.
Features: admin ingest triggers, job/event polling, cached section pages, health check.
"""

import hmac
import logging
import os
from datetime import datetime, timezone
from functools import wraps
from typing import Optional

from flask import Flask, current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix

from cors_config import configure_cors
from fantasyreport.config import Config, configure_logging
from fantasyreport.ingestion.orchestrator import Orchestrator
from fantasyreport.jobs.runner import SCOPE_ALL_ALLOWED, SCOPE_ONE_SOURCE, JobRunner
from fantasyreport.jobs.tracker import JobTracker
from fantasyreport.retrieval.cache import SectionCache, SectionService
from fantasyreport.storage.base import StorageError, Store, open_store

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_POLL = 500


def _int_arg(value, default=None):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def require_admin(f):
    """Decorator requiring ADMIN_TOKEN (when configured) as bearer token or X-Admin-Token."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('ADMIN_TOKEN') or ''
        if expected:
            auth = request.headers.get('Authorization', '')
            supplied = auth[7:].strip() if auth.lower().startswith('bearer ') else ''
            supplied = supplied or request.headers.get('X-Admin-Token', '').strip()
            if not supplied or not hmac.compare_digest(supplied, expected):
                return jsonify({'ok': False, 'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function


def handle_storage_error(f):
    """Decorator mapping storage outages to 503 instead of a raw 500."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except StorageError as e:
            logger.error(f"Storage error in {f.__name__}: {e}")
            return jsonify({'ok': False, 'error': 'Database temporarily unavailable', 'retry': True}), 503
    return decorated_function


def add_security_headers(response):
    """Add basic security headers to API responses"""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    return response


def create_app(
    config: Optional[Config] = None,
    store: Optional[Store] = None,
    runner: Optional[JobRunner] = None,
    section_service: Optional[SectionService] = None,
) -> Flask:
    config = config or Config.from_env()
    store = store or open_store(config.database_url)
    tracker = runner.tracker if runner else JobTracker(store)
    runner = runner or JobRunner(tracker, lambda: Orchestrator.from_config(config, store))
    section_service = section_service or SectionService(
        store,
        SectionCache(ttl=config.section_cache_ttl, stale_ttl=config.section_cache_stale_ttl),
    )

    app = Flask(__name__)
    # Trust one proxy hop for client IP/scheme (rate limiting keys on the client address)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)
    app = configure_cors(app)
    app.config['JSON_SORT_KEYS'] = False
    app.config['ADMIN_TOKEN'] = config.admin_token
    app.extensions['fantasyreport'] = {
        'store': store,
        'tracker': tracker,
        'runner': runner,
        'sections': section_service,
    }

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=["2000 per day", "300 per hour"],
        storage_uri="memory://",
    )
    app.after_request(add_security_headers)

    @app.route('/api/health')
    @limiter.exempt
    def health_check():
        """API health check endpoint"""
        try:
            db_ok = store.ping()
        except StorageError as e:
            logger.warning(f"Health check: store unreachable: {e}")
            db_ok = False
        return jsonify({
            'status': 'healthy' if db_ok else 'degraded',
            'database': db_ok,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }), (200 if db_ok else 503)

    @app.route('/api/admin/jobs/ingest', methods=['POST'])
    @limiter.limit("20 per minute")
    @require_admin
    @handle_storage_error
    def trigger_source_ingest():
        """Start a one-source ingest job; returns immediately with the job id."""
        data = request.get_json(silent=True) or {}
        source_id = _int_arg(data.get('sourceId', data.get('source_id')))
        if source_id is None:
            return jsonify({'ok': False, 'error': 'sourceId is required'}), 400
        if store.get_source(source_id) is None:
            return jsonify({'ok': False, 'error': f'Unknown source {source_id}'}), 404
        limit = _int_arg(data.get('limit'), config.ingest_limit)
        job_id = runner.trigger_ingest(
            SCOPE_ONE_SOURCE,
            {'source_id': source_id, 'limit': limit},
            actor=request.headers.get('X-Actor') or get_remote_address(),
        )
        return jsonify({'ok': True, 'job_id': job_id}), 202

    @app.route('/api/admin/jobs/ingest-allowed', methods=['POST'])
    @limiter.limit("10 per minute")
    @require_admin
    @handle_storage_error
    def trigger_allowed_ingest():
        """Start an ingest job over every allowed source."""
        data = request.get_json(silent=True) or {}
        limit = _int_arg(data.get('perSourceLimit', data.get('limit')), config.ingest_limit)
        job_id = runner.trigger_ingest(
            SCOPE_ALL_ALLOWED,
            {'limit': limit},
            actor=request.headers.get('X-Actor') or get_remote_address(),
        )
        return jsonify({'ok': True, 'job_id': job_id}), 202

    @app.route('/api/admin/jobs/<job_id>')
    @limiter.limit("120 per minute")
    @require_admin
    @handle_storage_error
    def get_job(job_id):
        job = tracker.get(job_id)
        if job is None:
            return jsonify({'ok': False, 'error': 'Job not found'}), 404
        return jsonify({'ok': True, 'job': job.to_dict()})

    @app.route('/api/admin/jobs/<job_id>/events')
    @limiter.limit("240 per minute")
    @require_admin
    @handle_storage_error
    def get_job_events(job_id):
        """Events with seq > after, oldest first; poll again with the returned last_seq."""
        if tracker.get(job_id) is None:
            return jsonify({'ok': False, 'error': 'Job not found'}), 404
        after = max(0, _int_arg(request.args.get('after'), 0))
        limit = max(1, min(MAX_EVENTS_PER_POLL, _int_arg(request.args.get('limit'), MAX_EVENTS_PER_POLL)))
        events = tracker.events_after(job_id, after, limit=limit)
        return jsonify({
            'ok': True,
            'events': [e.to_dict() for e in events],
            'last_seq': events[-1].seq if events else after,
        })

    @app.route('/api/section')
    @limiter.limit("120 per minute")
    def get_section():
        """Provider-interleaved page of one section"""
        args = request.args
        page = section_service.get_section(
            args.get('key'),
            limit=args.get('limit', 12),
            offset=args.get('offset', 0),
            days=args.get('days', 45),
            week=args.get('week'),
            provider=args.get('provider'),
            source_id=args.get('sourceId'),
            sport=args.get('sport'),
            per_provider_cap=args.get('perProviderCap'),
        )
        body = page.to_dict()
        body['cached'] = page.cached
        return jsonify(body)

    @app.errorhandler(404)
    def not_found(error):
        """Custom 404 handler"""
        return jsonify({'ok': False, 'error': 'Endpoint not found'}), 404

    @app.errorhandler(429)
    def rate_limit_handler(error):
        """Custom rate limit handler"""
        return jsonify({
            'ok': False,
            'error': 'Rate limit exceeded',
            'message': 'Too many requests, please slow down',
            'retry_after': 60,
        }), 429

    @app.errorhandler(500)
    def internal_error(error):
        """Custom 500 handler"""
        logger.error(f"Internal server error: {error}")
        return jsonify({'ok': False, 'error': 'Internal server error'}), 500

    return app


if __name__ == '__main__':
    config = Config.from_env()
    configure_logging(config)
    port = int(os.environ.get('PORT', 5002))
    debug = os.environ.get('FLASK_ENV') == 'development'

    logger.info(f"Starting fantasyreport API on port {port}")
    create_app(config).run(host='0.0.0.0', port=port, debug=debug, threaded=True)
