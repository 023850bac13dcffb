"""
Risk & Account Routes.
Flask Blueprint exposing reconciled auto-liq settings and the account list.

Usage:
    from risk_manager.routes import risk_bp, init_risk_routes

    init_risk_routes(sessions=registry, settings_cache=settings_cache)
    app.register_blueprint(risk_bp)

Every request names its Tradovate connection with the ``X-Connection-Ref``
header, a ``connectionRef`` query/body value, or the Flask session cookie set
by ``/api/connect``.
"""
import asyncio
import logging

from flask import Blueprint, jsonify, request, session

from .accounts import list_accounts, resolve_caller_role
from .async_utils import run_async
from .cache import SettingsCache
from .config import get_request_timeout, get_settings_cache_ttl
from .errors import RiskManagerError, TokenExpired, ValidationError
from .risk import (
    PERMISSIONED,
    OWNER,
    get_settings,
    set_settings,
    validate_fields,
    writable_fields,
)
from .session import SessionRegistry

logger = logging.getLogger(__name__)

risk_bp = Blueprint('risk', __name__)

# Module-level state, initialized via init_risk_routes()
_sessions: SessionRegistry = None
_settings_cache: SettingsCache = None
_cache_ttl = 30
_request_timeout = None


def init_risk_routes(sessions, settings_cache=None, cache_ttl=None, request_timeout=None):
    """Initialize risk routes with required dependencies."""
    global _sessions, _settings_cache, _cache_ttl, _request_timeout

    _sessions = sessions
    _settings_cache = settings_cache or SettingsCache()
    _cache_ttl = get_settings_cache_ttl() if cache_ttl is None else cache_ttl
    _request_timeout = get_request_timeout() if request_timeout is None else request_timeout


# ============================================================================
# SHARED HELPERS
# ============================================================================

def current_connection_ref():
    """Connection ref for this request: header, query/body, then cookie session."""
    body = request.get_json(silent=True) if request.is_json else None
    return (
        request.headers.get('X-Connection-Ref')
        or request.args.get('connectionRef')
        or (body.get('connectionRef') if isinstance(body, dict) else None)
        or session.get('connection_ref')
    )


def error_response(exc: Exception, context: str):
    """Map a failure to ``{success: false, error, code?}`` and an HTTP status."""
    if isinstance(exc, ValidationError):
        logger.warning(f"⚠️ {context} rejected: {exc}")
        return jsonify({'success': False, 'error': str(exc)}), 400

    if isinstance(exc, TokenExpired):
        logger.warning(f"⚠️ {context}: Tradovate token expired")
        return jsonify({'success': False, 'error': str(exc), 'code': exc.code}), 401

    if isinstance(exc, RiskManagerError):
        logger.error(f"❌ {context} error: {exc}")
    else:
        logger.exception(f"❌ {context} unexpected error: {exc}")
    return jsonify({'success': False, 'error': str(exc) or exc.__class__.__name__}), 500


def parse_account_id(raw) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError('accountId', "Invalid account ID") from None


def _run(coro):
    return run_async(coro, timeout=_request_timeout)


# ============================================================================
# RISK SETTINGS
# ============================================================================

@risk_bp.route('/api/risk/<account_id>', methods=['GET'])
def api_get_risk(account_id):
    """Current reconciled auto-liq settings for one account."""
    try:
        account_id = parse_account_id(account_id)
        connection_ref = current_connection_ref()
        client = _sessions.get_active_client(connection_ref)

        cached = _settings_cache.get_settings(connection_ref, account_id)
        if cached is not None:
            return jsonify({'success': True, 'settings': cached['settings'], 'cached': True})

        settings = _run(get_settings(client, account_id))
        payload = settings.to_dict() if settings else None
        _settings_cache.set_settings(connection_ref, account_id, payload, ttl=_cache_ttl)

        return jsonify({'success': True, 'settings': payload, 'cached': False})
    except Exception as e:
        return error_response(e, f"GET /api/risk/{account_id}")


@risk_bp.route('/api/risk/<account_id>', methods=['POST'])
def api_set_risk(account_id):
    """
    Set auto-liq parameters for an account.

    Body (all fields optional, at least one required):
      - dailyLossAutoLiq / dailyProfitAutoLiq     ($ daily loss limit / profit target)
      - weeklyLossAutoLiq / weeklyProfitAutoLiq
      - dailyLossAlert, dailyLossLiqOnly, *Percentage* fields
      - doNotUnlock, trailingMaxDrawdown*          (account owners only)
    """
    try:
        account_id = parse_account_id(account_id)
        body = request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ValidationError(None, "Request body must be a JSON object")

        fields = {name: value for name, value in body.items() if name != 'connectionRef'}
        shared = {name: value for name, value in fields.items()
                  if name in writable_fields(PERMISSIONED) and value is not None}
        owner_only = {name for name, value in fields.items()
                      if name in writable_fields(OWNER) - writable_fields(PERMISSIONED) and value is not None}

        # owner-only values are checked by set_settings once the role is known
        if not shared and not owner_only:
            raise ValidationError(None, "No valid risk parameters provided")
        if shared:
            validate_fields(shared)

        connection_ref = current_connection_ref()
        client = _sessions.get_active_client(connection_ref)

        async def _apply():
            role = await resolve_caller_role(client, account_id) if owner_only else PERMISSIONED
            return await set_settings(client, account_id, fields, role)

        settings = _run(_apply())
        _settings_cache.invalidate(connection_ref, account_id)

        return jsonify({'success': True, 'settings': settings.to_dict()})
    except Exception as e:
        return error_response(e, f"POST /api/risk/{account_id}")


# ============================================================================
# ACCOUNTS
# ============================================================================

@risk_bp.route('/api/accounts', methods=['GET'])
def api_list_accounts():
    """Accounts for the connection; ``?withRisk=1`` adds each account's settings."""
    try:
        client = _sessions.get_active_client(current_connection_ref())
        with_risk = request.args.get('withRisk', '0').lower() in ('1', 'true', 'yes')

        async def _load():
            accounts = await list_accounts(client)
            result = [account.to_dict() for account in accounts]
            if with_risk:
                settings = await asyncio.gather(*(get_settings(client, a.id) for a in accounts))
                for item, autoliq in zip(result, settings):
                    item['autoLiq'] = autoliq.to_dict() if autoliq else None
            return result

        return jsonify({'success': True, 'accounts': _run(_load())})
    except Exception as e:
        return error_response(e, "GET /api/accounts")
