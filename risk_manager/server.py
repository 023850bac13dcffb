#!/usr/bin/env python3
"""
Risk management web server.

    risk-manager-server --port 8082

Routes:
    /api/connect, /api/oauth/*    connect a Tradovate session
    /api/accounts                 list accounts
    /api/risk/<accountId>         view / set auto-liq limits
    /health, /api/cache           monitoring and debugging
"""
import argparse
import logging
import os
import secrets
from datetime import datetime, timezone

from flask import Flask, jsonify, request

from .async_utils import shutdown_async
from .auth_routes import auth_bp, init_auth_routes
from .cache import get_cache_status, settings_cache as default_settings_cache
from .config import SERVICE_NAME, get_environment, get_log_level
from .routes import current_connection_ref, init_risk_routes, risk_bp
from .session import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(sessions: SessionRegistry = None, settings_cache=None, cache_ttl=None,
               request_timeout=None) -> Flask:
    """Build the Flask app with its own connection registry."""
    app = Flask(__name__)
    app.secret_key = os.environ.get('FLASK_SECRET_KEY') or secrets.token_hex(32)

    sessions = sessions or SessionRegistry()
    settings_cache = settings_cache or default_settings_cache

    init_risk_routes(sessions, settings_cache, cache_ttl=cache_ttl, request_timeout=request_timeout)
    init_auth_routes(sessions, settings_cache)
    app.register_blueprint(risk_bp)
    app.register_blueprint(auth_bp)

    @app.route('/')
    def index():
        """Landing endpoint; OAuth redirects back here with ?connected= or ?error=."""
        return jsonify({
            'service': SERVICE_NAME,
            'environment': get_environment(),
            'connected': sessions.is_connected(current_connection_ref()),
            'oauthResult': {
                'connected': request.args.get('connected') == 'true',
                'error': request.args.get('error'),
            },
        })

    @app.route('/health')
    def health():
        """Health check endpoint for load balancers and monitoring."""
        return jsonify({
            'status': 'ok',
            'service': SERVICE_NAME,
            'cache': get_cache_status(),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })

    @app.route('/api/cache')
    def cache_contents():
        """Cached risk settings with remaining TTL. For debugging only."""
        entries = {
            key: {'data': entry['data'], 'expiresIn': entry['expires_in']}
            for key, entry in settings_cache.entries().items()
        }
        return jsonify({
            'entries': entries,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description='Start the Tradovate risk management server.')
    parser.add_argument('--host', default=os.getenv('HOST', '0.0.0.0'))
    parser.add_argument('--port', type=int, default=int(os.getenv('PORT', '8082')))
    parser.add_argument('--debug', action='store_true')
    args = parser.parse_args(argv)

    logging.basicConfig(level=get_log_level(), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    app = create_app()
    logger.info(f"🚀 Risk management server on http://{args.host}:{args.port} ({get_environment()})")
    try:
        app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False)
    finally:
        shutdown_async()


if __name__ == '__main__':
    main()
