"""Tests for the OAuth code exchange."""
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from risk_manager.config import DEFAULT_TOKEN_LIFETIME
from risk_manager.errors import (
    ConfigurationError,
    Unreachable,
    UpstreamError,
    UpstreamInconsistent,
    UpstreamRejected,
)
from risk_manager.oauth import exchange_code_for_token, get_oauth_login_url


def _response(payload, status=200):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.json.return_value = payload
    response.text = str(payload)
    return response


def test_login_url(oauth_env):
    url = urlparse(get_oauth_login_url(state='abc'))
    params = parse_qs(url.query)

    assert f"{url.scheme}://{url.netloc}{url.path}" == "https://trader.tradovate.com/oauth"
    assert params == {
        'response_type': ['code'],
        'client_id': ['8552'],
        'redirect_uri': ['http://localhost:8082/api/oauth/callback'],
        'state': ['abc'],
    }


def test_login_url_requires_client_id(monkeypatch):
    monkeypatch.delenv('TRADOVATE_CID', raising=False)

    with pytest.raises(ConfigurationError):
        get_oauth_login_url()


def test_exchange_posts_to_token_endpoint(oauth_env):
    with patch('risk_manager.oauth.http_requests.post',
               return_value=_response({'access_token': 'tok', 'expires_in': 4800})) as post:
        grant = exchange_code_for_token('the-code', 'live')

    assert grant.access_token == 'tok'
    assert grant.expires_in == 4800
    args, kwargs = post.call_args
    assert args[0] == "https://live.tradovateapi.com/v1/auth/oauthtoken"
    assert kwargs['json'] == {
        'grant_type': 'authorization_code',
        'code': 'the-code',
        'redirect_uri': 'http://localhost:8082/api/oauth/callback',
        'client_id': '8552',
        'client_secret': 'test-secret',
    }


def test_exchange_defaults_token_lifetime(oauth_env):
    with patch('risk_manager.oauth.http_requests.post', return_value=_response({'access_token': 'tok'})):
        grant = exchange_code_for_token('code')

    assert grant.expires_in == DEFAULT_TOKEN_LIFETIME


def test_exchange_oauth_error(oauth_env):
    payload = {'error': 'invalid_grant', 'error_description': 'Code expired'}
    with patch('risk_manager.oauth.http_requests.post', return_value=_response(payload, status=400)):
        with pytest.raises(UpstreamRejected) as exc_info:
            exchange_code_for_token('code')

    assert "invalid_grant" in str(exc_info.value)


def test_exchange_without_token(oauth_env):
    with patch('risk_manager.oauth.http_requests.post', return_value=_response({'token_type': 'Bearer'})):
        with pytest.raises(UpstreamInconsistent):
            exchange_code_for_token('code')


def test_exchange_unreachable(oauth_env):
    with patch('risk_manager.oauth.http_requests.post', side_effect=requests.ConnectionError("refused")):
        with pytest.raises(Unreachable):
            exchange_code_for_token('code')


@pytest.mark.parametrize("payload", [['access_token'], "ok", None])
def test_exchange_non_object_body(oauth_env, payload):
    with patch('risk_manager.oauth.http_requests.post', return_value=_response(payload)):
        with pytest.raises(UpstreamError):
            exchange_code_for_token('code')
