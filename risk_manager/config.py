"""
Configuration
=============
Environment-driven settings for the risk manager.

A ``.env`` file in the working directory is loaded on import, then every
setting is read with ``os.getenv``.

    TRADOVATE_ENV=demo              # demo | live
    TRADOVATE_CID=1234              # OAuth / API-access client id
    TRADOVATE_SEC=xxxxxxxx          # OAuth / API-access secret
    TRADOVATE_REDIRECT_URI=http://localhost:8082/api/oauth/callback
    REDIS_URL=redis://localhost:6379/0
"""

import os
import logging

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

ENVIRONMENTS = ('demo', 'live')

BASE_URLS = {
    'demo': "https://demo.tradovateapi.com/v1",
    'live': "https://live.tradovateapi.com/v1",
}

OAUTH_AUTHORIZE_URL = "https://trader.tradovate.com/oauth"

# Tradovate OAuth tokens live 90 minutes unless the exchange says otherwise
DEFAULT_TOKEN_LIFETIME = 5400

SERVICE_NAME = "tradovate-risk-manager"


def get_environment(value: str = None) -> str:
    """Resolve the Tradovate environment, defaulting to TRADOVATE_ENV or demo."""
    env = (value or os.getenv('TRADOVATE_ENV', 'demo')).strip().lower()
    if env not in ENVIRONMENTS:
        raise ConfigurationError(f'TRADOVATE_ENV must be "live" or "demo", got "{env}"')
    return env


def get_base_url(environment: str = None) -> str:
    return BASE_URLS[get_environment(environment)]


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ConfigurationError(f"Missing {name}")
    return value


def get_client_id() -> str:
    return _require('TRADOVATE_CID')


def get_client_secret() -> str:
    return _require('TRADOVATE_SEC')


def get_redirect_uri() -> str:
    return _require('TRADOVATE_REDIRECT_URI')


def get_app_identity() -> dict:
    """App id/version/device id sent with API-access credential logins."""
    return {
        'appId': os.getenv('TRADOVATE_APP_ID', 'TradovateRiskManager'),
        'appVersion': os.getenv('TRADOVATE_APP_VERSION', '1.0.0'),
        'deviceId': os.getenv('TRADOVATE_DEVICE_ID', 'RISK_MANAGER'),
    }


def get_redis_url():
    return os.getenv('REDIS_URL')


def get_settings_cache_ttl() -> int:
    """Seconds a reconciled settings read may be served from cache (0 disables)."""
    return int(os.getenv('RISK_CACHE_TTL', '30'))


def get_request_timeout():
    """Upper bound in seconds for one HTTP request's upstream work, None for no limit."""
    value = os.getenv('REQUEST_TIMEOUT', '60')
    return float(value) if value else None


def get_log_level() -> str:
    return os.getenv('LOG_LEVEL', 'INFO').upper()
