"""
Authenticated Tradovate REST client.

Wraps an access token and a base URL and issues JSON GET/POST calls with
bearer auth. Failures are classified into the package error taxonomy:

- 401 / "Access is denied"  -> TokenExpired
- any other non-2xx         -> UpstreamError(status, body)
- host unreachable          -> Unreachable

Usage:
    async with TradovateClient(token, base_url) as client:
        accounts = await client.get("/account/list")
"""

import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import TokenExpired, Unauthenticated, Unreachable, UpstreamError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_SIGNAL = "access is denied"


def is_token_expired(status: int, body: str) -> bool:
    """True when a failed response signals an expired or refused token."""
    return status == 401 or TOKEN_EXPIRY_SIGNAL in (body or "").lower()


class TradovateClient:
    """Bearer-token client for the Tradovate REST API."""

    def __init__(self, access_token: Optional[str], base_url: str):
        self.access_token = access_token
        self.base_url = base_url.rstrip('/')
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def _get_headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise Unauthenticated()
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def get(self, path: str, query: Dict[str, Any] = None) -> Any:
        """GET ``path`` with optional query parameters and return decoded JSON."""
        params = {k: str(v) for k, v in (query or {}).items()}
        return await self._request("GET", path, params=params)

    async def post(self, path: str, body: Any) -> Any:
        """POST ``body`` as JSON to ``path`` and return decoded JSON."""
        return await self._request("POST", path, json=body)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = self._get_headers()
        url = f"{self.base_url}{path}"

        if self.session is not None:
            return await self._send(self.session, method, path, url, headers, **kwargs)

        async with aiohttp.ClientSession() as session:
            return await self._send(session, method, path, url, headers, **kwargs)

    async def _send(self, session, method, path, url, headers, **kwargs) -> Any:
        try:
            async with session.request(method, url, headers=headers, **kwargs) as response:
                text = await response.text()
                status = response.status
        except aiohttp.ClientConnectionError as e:
            logger.error(f"❌ {method} {path} could not reach Tradovate: {e}")
            raise Unreachable(f"Could not reach Tradovate at {self.base_url}: {e}") from e

        if not 200 <= status < 300:
            logger.warning(f"⚠️ {method} {path} failed ({status}): {text[:200]}")
            if is_token_expired(status, text):
                raise TokenExpired()
            raise UpstreamError(status, text, f"{method} {path} failed ({status}): {text}")

        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise UpstreamError(status, text, f"{method} {path} returned a malformed body") from e
