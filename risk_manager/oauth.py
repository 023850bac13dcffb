"""
OAuth flow for Tradovate.

1. Send the user to ``get_oauth_login_url()``
2. Tradovate redirects back with ``?code=...``
3. ``exchange_code_for_token(code)`` turns the code into an access token
"""

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import requests as http_requests

from .config import (
    DEFAULT_TOKEN_LIFETIME,
    OAUTH_AUTHORIZE_URL,
    get_base_url,
    get_client_id,
    get_client_secret,
    get_redirect_uri,
)
from .errors import Unreachable, UpstreamError, UpstreamInconsistent, UpstreamRejected

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int = DEFAULT_TOKEN_LIFETIME
    token_type: str = "Bearer"


def get_oauth_login_url(state: str = None) -> str:
    """Tradovate authorization URL the browser should be redirected to."""
    params = {
        'response_type': 'code',
        'client_id': get_client_id(),
        'redirect_uri': get_redirect_uri(),
    }
    if state:
        params['state'] = state

    return f"{OAUTH_AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code_for_token(code: str, environment: str = None, timeout: float = 30) -> TokenGrant:
    """
    Exchange an authorization code for an access token.

    Raises:
        Unreachable: the token endpoint could not be reached
        UpstreamRejected: Tradovate answered with an OAuth error
        UpstreamInconsistent: no access token in the answer
    """
    url = f"{get_base_url(environment)}/auth/oauthtoken"
    token_data = {
        'grant_type': 'authorization_code',
        'code': code,
        'redirect_uri': get_redirect_uri(),
        'client_id': get_client_id(),
        'client_secret': get_client_secret(),
    }

    logger.info(f"Exchanging OAuth code {code[:10]}...")
    try:
        response = http_requests.post(
            url,
            json=token_data,
            headers={'Content-Type': 'application/json', 'Accept': 'application/json'},
            timeout=timeout,
        )
    except http_requests.RequestException as e:
        logger.error(f"❌ Could not reach Tradovate OAuth endpoint: {e}")
        raise Unreachable(f"Could not reach Tradovate OAuth endpoint: {e}") from e

    try:
        data = response.json()
    except ValueError as e:
        raise UpstreamError(response.status_code, response.text, "OAuth exchange returned a malformed body") from e
    if not isinstance(data, dict):
        raise UpstreamError(response.status_code, response.text)

    if data.get('error'):
        description = data.get('error_description') or 'unknown'
        logger.error(f"❌ OAuth error: {data['error']} - {description}")
        raise UpstreamRejected(f"OAuth error: {data['error']} - {description}")

    if not response.ok:
        raise UpstreamError(response.status_code, response.text)

    access_token = data.get('access_token')
    if not access_token:
        raise UpstreamInconsistent("No access token returned from OAuth exchange")

    grant = TokenGrant(
        access_token=access_token,
        expires_in=int(data.get('expires_in') or DEFAULT_TOKEN_LIFETIME),
        token_type=data.get('token_type') or 'Bearer',
    )
    logger.info(f"✅ OAuth exchange succeeded, token expires in {grant.expires_in}s")
    return grant
