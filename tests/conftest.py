"""Pytest configuration and fixtures."""
import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from risk_manager import cache as cache_module


class FakeTradovateClient:
    """
    Stand-in for TradovateClient.

    ``responses`` maps a GET path to a value, an exception instance to raise,
    or a callable taking the query dict. ``post_response`` works the same way
    with the posted body.
    """

    def __init__(self, responses=None, post_response=None):
        self.responses = dict(responses or {})
        self.post_response = post_response
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @staticmethod
    def _resolve(result, arg):
        if callable(result):
            result = result(arg)
        if isinstance(result, Exception):
            raise result
        return result

    async def get(self, path, query=None):
        self.calls.append(('GET', path, dict(query or {})))
        await asyncio.sleep(0)
        return self._resolve(self.responses.get(path, []), query or {})

    async def post(self, path, body):
        self.calls.append(('POST', path, dict(body)))
        await asyncio.sleep(0)
        return self._resolve(self.post_response, body)

    def paths(self, method=None):
        return [path for m, path, _ in self.calls if method is None or m == method]


@pytest.fixture
def fake_client():
    """Factory for FakeTradovateClient instances."""
    return FakeTradovateClient


@pytest.fixture(autouse=True)
def memory_cache_backend(monkeypatch):
    """Keep every test on the in-memory cache backend."""
    monkeypatch.delenv('REDIS_URL', raising=False)
    cache_module.reset_backend()
    yield
    cache_module.reset_backend()


@pytest.fixture
def oauth_env(monkeypatch):
    monkeypatch.setenv('TRADOVATE_ENV', 'demo')
    monkeypatch.setenv('TRADOVATE_CID', '8552')
    monkeypatch.setenv('TRADOVATE_SEC', 'test-secret')
    monkeypatch.setenv('TRADOVATE_REDIRECT_URI', 'http://localhost:8082/api/oauth/callback')
