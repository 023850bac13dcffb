"""
Connection registry.

Each connected Tradovate session gets an opaque connection ref. Route handlers
pass the ref for the current request and get back a client bound to that
connection's token; nothing is shared between connections.

Usage:
    registry = SessionRegistry()
    connection = registry.connect(access_token, environment='demo')
    client = registry.get_active_client(connection.connection_ref)
"""

import time
import secrets
import logging
from dataclasses import dataclass, asdict
from typing import Optional

from .cache import Cache
from .client import TradovateClient
from .config import DEFAULT_TOKEN_LIFETIME, get_base_url, get_environment
from .errors import NotConnected, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    connection_ref: str
    access_token: str
    environment: str
    base_url: str
    expires_at: float

    @property
    def expires_in(self) -> int:
        return max(int(self.expires_at - time.time()), 0)

    def client(self) -> TradovateClient:
        return TradovateClient(self.access_token, self.base_url)


class SessionRegistry:
    """Connections keyed by ref, expiring with their access token."""

    def __init__(self, store: Cache = None):
        self._store = store or Cache(prefix="rm:conn")

    @staticmethod
    def new_ref() -> str:
        return f"TS-{secrets.token_hex(8).upper()}"

    def connect(self, access_token: str, environment: str = None,
                expires_in: int = DEFAULT_TOKEN_LIFETIME, connection_ref: str = None) -> Connection:
        """
        Register an access token and return its connection.

        Passing an existing ``connection_ref`` replaces that connection's token
        (reconnect).
        """
        if not access_token:
            raise ValidationError('accessToken', "Access token is required")

        env = get_environment(environment)
        connection = Connection(
            connection_ref=connection_ref or self.new_ref(),
            access_token=access_token,
            environment=env,
            base_url=get_base_url(env),
            expires_at=time.time() + expires_in,
        )
        self._store.set(connection.connection_ref, asdict(connection), ttl=expires_in)
        logger.info(f"✅ Connected {connection.connection_ref} ({env}), token valid for {expires_in}s")
        return connection

    def get(self, connection_ref: Optional[str]) -> Connection:
        if not connection_ref:
            raise NotConnected()
        data = self._store.get(connection_ref)
        if not data:
            raise NotConnected()
        return Connection(**data)

    def is_connected(self, connection_ref: Optional[str]) -> bool:
        return bool(connection_ref) and self._store.get(connection_ref) is not None

    def get_active_client(self, connection_ref: Optional[str]) -> TradovateClient:
        """Client bound to the connection's token; NotConnected if none."""
        return self.get(connection_ref).client()

    def disconnect(self, connection_ref: Optional[str]):
        if connection_ref:
            self._store.delete(connection_ref)
            logger.info(f"Disconnected {connection_ref}")
