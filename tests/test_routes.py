"""Tests for the Flask routes."""
import logging

import pytest

from risk_manager.cache import Cache, SettingsCache
from risk_manager.errors import TokenExpired, UpstreamError, UpstreamRejected
from risk_manager.oauth import TokenGrant
from risk_manager.risk import OWNER_AUTOLIQ_PATH, PERMISSIONED_AUTOLIQ_PATH, UPDATE_AUTOLIQ_PATH
from risk_manager.server import create_app
from risk_manager.session import Connection, SessionRegistry


@pytest.fixture
def registry():
    return SessionRegistry(Cache(prefix='test:conn'))


@pytest.fixture
def app(registry):
    app = create_app(sessions=registry, settings_cache=SettingsCache(), cache_ttl=30, request_timeout=None)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def upstream(monkeypatch, fake_client):
    """Route every connection's Tradovate calls to one fake client."""
    fake = fake_client(
        responses={
            OWNER_AUTOLIQ_PATH: [{'id': 1, 'dailyLossAutoLiq': 300}],
            PERMISSIONED_AUTOLIQ_PATH: [],
        },
        post_response=lambda body: {'permissionedAccountAutoLiq': {'id': 7, **body}},
    )
    monkeypatch.setattr(Connection, 'client', lambda self: fake)
    return fake


@pytest.fixture
def connected(client):
    response = client.post('/api/connect', json={'accessToken': 'tok-abc', 'environment': 'demo'})
    assert response.status_code == 200
    return response.get_json()['connectionRef']


# ============================================================================
# CONNECT
# ============================================================================

def test_connect_requires_token(client):
    response = client.post('/api/connect', json={})

    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_connect_status_and_disconnect(client, connected):
    status = client.get('/api/connect').get_json()
    assert status['connected'] is True
    assert status['connectionRef'] == connected
    assert status['environment'] == 'demo'
    assert status['expiresIn'] > 0

    assert client.delete('/api/connect').get_json() == {'success': True, 'connected': False}
    assert client.get('/api/connect').get_json()['connected'] is False


def test_connection_ref_header_selects_connection(app, registry, upstream):
    other = registry.connect('tok-other', 'demo')
    client = app.test_client()

    response = client.get('/api/risk/101', headers={'X-Connection-Ref': other.connection_ref})

    assert response.status_code == 200


def test_reconnect_replaces_previous_connection(client, registry, connected):
    second = client.post('/api/connect', json={'accessToken': 'tok-new'}).get_json()['connectionRef']

    assert second != connected
    assert not registry.is_connected(connected)
    assert registry.is_connected(second)


# ============================================================================
# RISK SETTINGS
# ============================================================================

def test_get_risk_not_connected_is_500(client, upstream):
    response = client.get('/api/risk/101')

    assert response.status_code == 500
    assert "Not connected" in response.get_json()['error']
    assert upstream.calls == []


def test_get_risk_invalid_account_id(client, connected, upstream):
    response = client.get('/api/risk/abc')

    assert response.status_code == 400
    assert response.get_json()['error'] == "accountId: Invalid account ID"


def test_get_risk_is_cached_per_connection(client, connected, upstream):
    first = client.get('/api/risk/101').get_json()
    second = client.get('/api/risk/101').get_json()

    assert first['success'] is True
    assert first['cached'] is False
    assert first['settings']['dailyLossAutoLiq'] == 300
    assert first['settings']['ownerAutoLiqId'] == 1
    assert second['cached'] is True
    assert second['settings'] == first['settings']
    assert len(upstream.paths('GET')) == 2


def test_get_risk_with_no_records(client, connected, upstream):
    upstream.responses[OWNER_AUTOLIQ_PATH] = TokenExpired()

    body = client.get('/api/risk/101').get_json()

    assert body == {'success': True, 'settings': None, 'cached': False}


def test_post_risk_rejects_negative_amount_without_calls(client, connected, upstream):
    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': -5})

    assert response.status_code == 400
    assert 'dailyLossAutoLiq' in response.get_json()['error']
    assert upstream.calls == []


def test_post_risk_empty_body(client, connected, upstream):
    response = client.post('/api/risk/101', json={})

    assert response.status_code == 400
    assert response.get_json()['error'] == "No valid risk parameters provided"
    assert upstream.calls == []


def test_post_risk_permissioned_writes_and_invalidates_cache(client, connected, upstream):
    client.get('/api/risk/101')

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500, 'dailyProfitAutoLiq': 1000})

    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['settings']['dailyLossAutoLiq'] == 500
    assert body['settings']['permissionedAutoLiqId'] == 7
    assert upstream.calls[-1] == (
        'POST', UPDATE_AUTOLIQ_PATH, {'accountId': 101, 'dailyLossAutoLiq': 500, 'dailyProfitAutoLiq': 1000},
    )
    # no role lookup for allow-listed fields
    assert '/auth/me' not in upstream.paths('GET')

    assert client.get('/api/risk/101').get_json()['cached'] is False


def test_post_risk_owner_only_field_as_permissioned_is_400(client, connected, upstream):
    upstream.responses['/auth/me'] = {'userId': 1}
    upstream.responses['/account/item'] = {'id': 101, 'name': 'DEMO101', 'userId': 2}

    response = client.post('/api/risk/101', json={'doNotUnlock': True})

    assert response.status_code == 400
    assert upstream.paths('POST') == []


def test_post_risk_owner_keeps_owner_only_fields(client, connected, upstream):
    upstream.responses['/auth/me'] = {'userId': 42}
    upstream.responses['/account/item'] = {'id': 101, 'name': 'DEMO101', 'userId': 42}
    upstream.post_response = lambda body: {'userAccountAutoLiq': {'id': 3, **body}}

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500, 'doNotUnlock': True})

    assert response.status_code == 200
    assert response.get_json()['settings']['doNotUnlock'] is True
    assert upstream.calls[-1][2] == {'accountId': 101, 'dailyLossAutoLiq': 500, 'doNotUnlock': True}


@pytest.mark.parametrize("extra", [
    {'trailingMaxDrawdown': 0},
    {'doNotUnlock': 'yes'},
    {'trailingMaxDrawdownMode': 'Weekly'},
])
def test_post_risk_permissioned_ignores_bad_owner_only_values(client, connected, upstream, extra):
    upstream.responses['/auth/me'] = {'userId': 1}
    upstream.responses['/account/item'] = {'id': 101, 'name': 'DEMO101', 'userId': 2}

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500, **extra})

    assert response.status_code == 200
    assert upstream.paths('POST') == [UPDATE_AUTOLIQ_PATH]
    assert upstream.calls[-1][2] == {'accountId': 101, 'dailyLossAutoLiq': 500}


def test_post_risk_owner_bad_owner_only_value_is_400(client, connected, upstream):
    upstream.responses['/auth/me'] = {'userId': 42}
    upstream.responses['/account/item'] = {'id': 101, 'name': 'DEMO101', 'userId': 42}

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500, 'trailingMaxDrawdownMode': 'Weekly'})

    assert response.status_code == 400
    assert 'trailingMaxDrawdownMode' in response.get_json()['error']
    assert upstream.paths('POST') == []


@pytest.mark.parametrize("account_item", [UpstreamError(404, "Not Found"), None, ['unexpected']])
def test_post_risk_failed_ownership_check_writes_as_permissioned(client, connected, upstream, account_item):
    upstream.responses['/auth/me'] = {'userId': 42}
    upstream.responses['/account/item'] = account_item

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500, 'doNotUnlock': True})

    assert response.status_code == 200
    assert upstream.calls[-1] == ('POST', UPDATE_AUTOLIQ_PATH, {'accountId': 101, 'dailyLossAutoLiq': 500})


def test_post_risk_connection_ref_in_body_is_not_a_field(app, registry, upstream, caplog):
    ref = registry.connect('tok-body', 'demo').connection_ref
    client = app.test_client()

    with caplog.at_level(logging.INFO, logger='risk_manager'):
        response = client.post('/api/risk/101', json={'connectionRef': ref, 'dailyLossAutoLiq': 500})

    assert response.status_code == 200
    assert upstream.calls[-1][2] == {'accountId': 101, 'dailyLossAutoLiq': 500}
    assert 'Dropping fields' not in caplog.text


def test_post_risk_token_expired_is_401(client, connected, upstream):
    upstream.post_response = TokenExpired()

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500})

    assert response.status_code == 401
    assert response.get_json()['code'] == 'TOKEN_EXPIRED'


def test_post_risk_upstream_error_text_is_500(client, connected, upstream):
    upstream.post_response = {'errorText': 'Risk settings are locked'}

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500})

    assert response.status_code == 500
    assert response.get_json() == {'success': False, 'error': 'Risk settings are locked'}


def test_post_risk_inconsistent_response_is_500(client, connected, upstream):
    upstream.post_response = {}

    response = client.post('/api/risk/101', json={'dailyLossAutoLiq': 500})

    assert response.status_code == 500


# ============================================================================
# ACCOUNTS
# ============================================================================

ACCOUNTS = [
    {'id': 101, 'name': 'DEMO101', 'userId': 42, 'accountType': 'Customer', 'active': True},
    {'id': 102, 'name': 'DEMO102', 'userId': 42, 'accountType': 'Customer', 'active': False},
]


def test_list_accounts(client, connected, upstream):
    upstream.responses['/account/list'] = ACCOUNTS

    body = client.get('/api/accounts').get_json()

    assert body['success'] is True
    assert [a['id'] for a in body['accounts']] == [101, 102]
    assert body['accounts'][0]['accountType'] == 'Customer'
    assert 'autoLiq' not in body['accounts'][0]


def test_list_accounts_with_risk(client, connected, upstream):
    upstream.responses['/account/list'] = ACCOUNTS

    body = client.get('/api/accounts?withRisk=1').get_json()

    assert [a['autoLiq']['dailyLossAutoLiq'] for a in body['accounts']] == [300, 300]


def test_list_accounts_token_expired(client, connected, upstream):
    upstream.responses['/account/list'] = TokenExpired()

    response = client.get('/api/accounts')

    assert response.status_code == 401
    assert response.get_json()['code'] == 'TOKEN_EXPIRED'


# ============================================================================
# OAUTH
# ============================================================================

def test_oauth_login_redirects_with_state(client, oauth_env):
    response = client.get('/api/oauth/login')

    assert response.status_code == 302
    location = response.headers['Location']
    assert location.startswith("https://trader.tradovate.com/oauth?")
    assert "client_id=8552" in location
    assert "state=" in location


def test_oauth_callback_error_redirects_home(client):
    response = client.get('/api/oauth/callback?error=access_denied&error_description=User+cancelled')

    assert response.status_code == 302
    assert response.headers['Location'].endswith("/?error=User+cancelled")


def test_oauth_callback_without_code(client):
    response = client.get('/api/oauth/callback')

    assert "error=No+authorization+code+received" in response.headers['Location']


def test_oauth_callback_connects(client, registry, monkeypatch, oauth_env):
    monkeypatch.setattr(
        'risk_manager.auth_routes.exchange_code_for_token',
        lambda code, environment=None: TokenGrant('tok-oauth', expires_in=600),
    )

    response = client.get('/api/oauth/callback?code=abc')

    assert response.headers['Location'].endswith("/?connected=true")
    status = client.get('/api/connect').get_json()
    assert status['connected'] is True
    assert status['expiresIn'] <= 600


def test_oauth_exchange(client, monkeypatch, oauth_env):
    monkeypatch.setattr(
        'risk_manager.auth_routes.exchange_code_for_token',
        lambda code, environment=None: TokenGrant('tok-' + code),
    )

    body = client.post('/api/oauth/exchange', json={'code': 'xyz'}).get_json()

    assert body['success'] is True
    assert body['connected'] is True
    assert body['environment'] == 'demo'


def test_oauth_exchange_rejected(client, monkeypatch, oauth_env):
    def refuse(code, environment=None):
        raise UpstreamRejected("OAuth error: invalid_grant - code expired")

    monkeypatch.setattr('risk_manager.auth_routes.exchange_code_for_token', refuse)

    response = client.post('/api/oauth/exchange', json={'code': 'old'})

    assert response.status_code == 500
    assert "invalid_grant" in response.get_json()['error']


def test_oauth_exchange_requires_code(client):
    assert client.post('/api/oauth/exchange', json={}).status_code == 400


# ============================================================================
# MONITORING
# ============================================================================

def test_health(client):
    body = client.get('/health').get_json()

    assert body['status'] == 'ok'
    assert body['cache']['backend'] == 'memory'


def test_cache_endpoint_lists_cached_reads(client, connected, upstream):
    client.get('/api/risk/101')

    entries = client.get('/api/cache').get_json()['entries']

    assert list(entries) == [f"rm:risk:{connected}:101"]
    entry = entries[f"rm:risk:{connected}:101"]
    assert entry['data']['settings']['dailyLossAutoLiq'] == 300
    assert 0 < entry['expiresIn'] <= 30


def test_index_reports_oauth_result(client):
    body = client.get('/?connected=true').get_json()

    assert body['oauthResult'] == {'connected': True, 'error': None}
    assert body['connected'] is False
