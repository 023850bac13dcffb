"""
Tradovate API Access login.

Username/password login against ``/auth/accesstokenrequest``, for the command
line where there is no browser to complete OAuth. The web app only accepts
pasted tokens or OAuth.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp

from .config import DEFAULT_TOKEN_LIFETIME, get_app_identity, get_base_url
from .errors import Unreachable, UpstreamError, UpstreamRejected
from .oauth import TokenGrant

logger = logging.getLogger(__name__)


async def request_access_token(
    username: str,
    password: str,
    cid: Optional[int] = None,
    sec: Optional[str] = None,
    environment: str = None,
) -> TokenGrant:
    """
    Log in with credentials and return an access token grant.

    Raises:
        UpstreamRejected: bad credentials, captcha challenge or penalty ticket
        Unreachable: Tradovate could not be reached
    """
    body = {
        'name': username,
        'password': password,
        **get_app_identity(),
    }
    if cid and sec:
        body['cid'] = int(cid)
        body['sec'] = sec

    url = f"{get_base_url(environment)}/auth/accesstokenrequest"
    logger.info(f"Calling /auth/accesstokenrequest for {username}...")

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=body, headers={"Content-Type": "application/json"}) as response:
                status = response.status
                text = await response.text()
    except aiohttp.ClientConnectionError as e:
        raise Unreachable(f"Could not reach Tradovate at {url}: {e}") from e

    if status != 200:
        logger.error(f"API Access login failed: {status} - {text}")
        raise UpstreamError(status, text)

    try:
        data = json.loads(text)
    except ValueError as e:
        raise UpstreamError(status, text, "/auth/accesstokenrequest returned a malformed body") from e
    if not isinstance(data, dict):
        raise UpstreamError(status, text, "/auth/accesstokenrequest returned no login result")

    # Device not trusted yet
    if data.get('p-captcha'):
        logger.warning(f"⚠️ CAPTCHA required for {username} - device not trusted")
        raise UpstreamRejected("CAPTCHA required - device not trusted. Use the OAuth flow instead.")

    if 'p-ticket' in data and not data.get('accessToken'):
        p_time = data.get('p-time', 60)
        logger.warning(f"⚠️ Rate limited for {username} - wait {p_time}s")
        raise UpstreamRejected(f"Rate limited - wait {p_time}s")

    if data.get('errorText'):
        raise UpstreamRejected(data['errorText'])

    access_token = data.get('accessToken')
    if not access_token:
        raise UpstreamRejected("No accessToken in response")

    logger.info(f"✅ API Access login successful for {username}")
    return TokenGrant(access_token=access_token, expires_in=_seconds_until(data.get('expirationTime')))


def _seconds_until(expiration_time: Optional[str]) -> int:
    """Lifetime of a token from Tradovate's ISO ``expirationTime``."""
    if not expiration_time:
        return DEFAULT_TOKEN_LIFETIME
    try:
        # Tradovate returns ISO format: "2025-12-11T12:00:00.000Z"
        expires_at = datetime.fromisoformat(expiration_time.replace('Z', '+00:00'))
    except ValueError:
        return DEFAULT_TOKEN_LIFETIME
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(int((expires_at - datetime.now(timezone.utc)).total_seconds()), 0)
