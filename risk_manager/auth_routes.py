"""
Connection & OAuth Routes.
Flask Blueprint for connecting a Tradovate session by pasted token or OAuth.

Usage:
    from risk_manager.auth_routes import auth_bp, init_auth_routes

    init_auth_routes(sessions=registry, settings_cache=settings_cache)
    app.register_blueprint(auth_bp)
"""
import logging
import secrets
from urllib.parse import urlencode

from flask import Blueprint, jsonify, redirect, request, session

from .cache import SettingsCache
from .config import get_environment
from .errors import ValidationError
from .oauth import exchange_code_for_token, get_oauth_login_url
from .routes import current_connection_ref, error_response
from .session import SessionRegistry

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)

# Module-level state, initialized via init_auth_routes()
_sessions: SessionRegistry = None
_settings_cache: SettingsCache = None


def init_auth_routes(sessions, settings_cache=None):
    """Initialize connection routes with required dependencies."""
    global _sessions, _settings_cache

    _sessions = sessions
    _settings_cache = settings_cache or SettingsCache()


def _connect(access_token, environment=None, expires_in=None):
    """Replace this browser session's connection with a new one."""
    previous = session.get('connection_ref')
    if previous:
        _sessions.disconnect(previous)
        _settings_cache.invalidate_connection(previous)

    kwargs = {'expires_in': expires_in} if expires_in else {}
    connection = _sessions.connect(access_token, environment, **kwargs)
    session['connection_ref'] = connection.connection_ref
    return connection


def _connected_payload(connection):
    return {
        'success': True,
        'environment': connection.environment,
        'connected': True,
        'connectionRef': connection.connection_ref,
    }


def _home(**params):
    return redirect('/?' + urlencode(params))


# ============================================================================
# TOKEN CONNECT
# ============================================================================

@auth_bp.route('/api/connect', methods=['POST'])
def api_connect():
    """Connect using a pasted access token."""
    try:
        body = request.get_json(silent=True) or {}
        access_token = body.get('accessToken') if isinstance(body, dict) else None
        if not access_token:
            raise ValidationError('accessToken', "Access token is required")

        connection = _connect(access_token, body.get('environment'))
        return jsonify(_connected_payload(connection))
    except Exception as e:
        return error_response(e, "POST /api/connect")


@auth_bp.route('/api/connect', methods=['GET'])
def api_connect_status():
    """Check connection status."""
    try:
        connection_ref = current_connection_ref()
        if _sessions.is_connected(connection_ref):
            connection = _sessions.get(connection_ref)
            return jsonify({
                'success': True,
                'environment': connection.environment,
                'connected': True,
                'connectionRef': connection.connection_ref,
                'expiresIn': connection.expires_in,
            })
        return jsonify({'success': True, 'environment': get_environment(), 'connected': False})
    except Exception as e:
        return error_response(e, "GET /api/connect")


@auth_bp.route('/api/connect', methods=['DELETE'])
def api_disconnect():
    connection_ref = current_connection_ref()
    _sessions.disconnect(connection_ref)
    if connection_ref:
        _settings_cache.invalidate_connection(connection_ref)
    session.pop('connection_ref', None)
    return jsonify({'success': True, 'connected': False})


# ============================================================================
# OAUTH
# ============================================================================

@auth_bp.route('/api/oauth/login', methods=['GET'])
def api_oauth_login():
    """Redirect the browser to Tradovate's OAuth consent page."""
    try:
        state = secrets.token_urlsafe(32)
        session['oauth_state'] = state
        return redirect(get_oauth_login_url(state))
    except Exception as e:
        return error_response(e, "GET /api/oauth/login")


@auth_bp.route('/api/oauth/callback', methods=['GET'])
def api_oauth_callback():
    """Tradovate OAuth callback."""
    code = request.args.get('code')
    state = request.args.get('state')
    error = request.args.get('error')
    expected_state = session.pop('oauth_state', None)

    if error:
        return _home(error=request.args.get('error_description') or error)

    if not code:
        return _home(error="No authorization code received")

    if expected_state and state and state != expected_state:
        logger.warning("⚠️ OAuth callback state mismatch")
        return _home(error="Invalid authorization state")

    try:
        grant = exchange_code_for_token(code, get_environment())
        _connect(grant.access_token, get_environment(), grant.expires_in)
        return _home(connected='true')
    except Exception as e:
        logger.error(f"❌ OAuth callback error: {e}")
        return _home(error=str(e) or "OAuth exchange failed")


@auth_bp.route('/api/oauth/exchange', methods=['POST'])
def api_oauth_exchange():
    """Exchange an OAuth code posted by the browser for a connection."""
    try:
        body = request.get_json(silent=True) or {}
        code = body.get('code') if isinstance(body, dict) else None
        if not code:
            raise ValidationError('code', "No authorization code provided")

        environment = get_environment()
        grant = exchange_code_for_token(code, environment)
        connection = _connect(grant.access_token, environment, grant.expires_in)
        return jsonify(_connected_payload(connection))
    except Exception as e:
        return error_response(e, "POST /api/oauth/exchange")
