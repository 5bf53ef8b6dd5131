from urllib.parse import parse_qs, urlparse

import pytest

from conftest import FakeResponse, fetch_all, fetch_one
from socialpub.errors import (
    InvalidStateError, NotFoundError, OAuthExchangeError, ProfileFetchError,
)
from socialpub.oauth import AccountConnector, normalize_linkedin_profile
from socialpub.oauth_state import PendingConnection, StateSigner

FB_PAGES = {'data': [
    {'id': 'page-1', 'name': 'Acme Page', 'access_token': 'page-token-1',
     'picture': {'data': {'url': 'https://img.example.com/1.png'}}},
    {'id': 'page-2', 'name': 'Acme Events', 'access_token': 'page-token-2'},
]}

LI_PROFILE = {
    'id': 'li-abc',
    'localizedFirstName': 'Ada',
    'localizedLastName': 'Lovelace',
    'vanityName': 'ada',
    'profilePicture': {'displayImage~': {'elements': [
        {'identifiers': [{'identifier': 'https://media.licdn.com/small.jpg'}]},
        {'identifiers': [{'identifier': 'https://media.licdn.com/large.jpg'}]},
    ]}},
}


@pytest.fixture
def connector(config, vault, session, db_path):
    return AccountConnector(config, vault, StateSigner(config.state_secret), session=session)


@pytest.fixture
def pending(org_id, admin):
    return PendingConnection(org_id, admin.id)


def _state_from(url):
    return parse_qs(urlparse(url).query)['state'][0]


def _facebook_responses(pages=FB_PAGES):
    return [
        FakeResponse(json_data={'access_token': 'short-user-token'}),
        FakeResponse(json_data={'access_token': 'long-user-token', 'expires_in': 5184000}),
        FakeResponse(json_data=pages),
    ]


def _account_count(db_path):
    return fetch_one(db_path, "SELECT COUNT(*) AS cnt FROM social_accounts")['cnt']


def test_authorization_url_carries_client_redirect_and_state(connector, pending):
    url = connector.build_authorization_url('linkedin', pending)
    query = parse_qs(urlparse(url).query)
    assert url.startswith('https://www.linkedin.com/oauth/v2/authorization?')
    assert query['client_id'] == ['li-client-id']
    assert query['redirect_uri'] == ['https://pub.example.com/api/oauth/linkedin/callback']
    assert query['response_type'] == ['code']
    state = connector.signer.verify(query['state'][0], platform='linkedin')
    assert state.organization_id == pending.organization_id
    assert state.user_id == pending.user_id


def test_facebook_connect_stores_each_page_encrypted(connector, pending, session, vault, db_path):
    session.get.side_effect = _facebook_responses()
    state = _state_from(connector.build_authorization_url('facebook', pending))

    accounts = connector.complete_connection('facebook', 'auth-code', state)

    assert sorted(a.external_account_id for a in accounts) == ['page-1', 'page-2']
    row = fetch_one(db_path, "SELECT * FROM social_accounts WHERE external_account_id = 'page-1'")
    assert row['access_token'] != 'page-token-1'
    assert vault.decrypt(row['access_token']) == 'page-token-1'
    assert row['token_expires_at'] is None
    assert row['avatar_url'] == 'https://img.example.com/1.png'
    assert row['is_active'] == 1
    assert row['connected_by'] == pending.user_id

    token_call = session.get.call_args_list[1]
    assert token_call.kwargs['params']['grant_type'] == 'fb_exchange_token'
    assert token_call.kwargs['params']['fb_exchange_token'] == 'short-user-token'
    assert token_call.kwargs['timeout'] == 30

    actions = [r['action'] for r in fetch_all(db_path, "SELECT action FROM audit_logs")]
    assert actions.count('account.connect') == 2


def test_preselected_account_is_the_only_one_stored(connector, org_id, admin, session, db_path):
    session.get.side_effect = _facebook_responses()
    pending = PendingConnection(org_id, admin.id, external_account_id='page-2')
    state = _state_from(connector.build_authorization_url('facebook', pending))

    accounts = connector.complete_connection('facebook', 'auth-code', state)

    assert [a.external_account_id for a in accounts] == ['page-2']
    assert _account_count(db_path) == 1


def test_instagram_accounts_come_from_linked_pages(connector, pending, session, vault, db_path):
    pages = {'data': [
        {'id': 'page-1', 'name': 'No IG', 'access_token': 'pt-1'},
        {'id': 'page-2', 'name': 'With IG', 'access_token': 'pt-2',
         'instagram_business_account': {'id': 'ig-77'}},
    ]}
    session.get.side_effect = _facebook_responses(pages) + [
        FakeResponse(json_data={'id': 'ig-77', 'username': 'acme.ig', 'name': 'Acme IG',
                                'profile_picture_url': 'https://img.example.com/ig.png'}),
    ]
    state = _state_from(connector.build_authorization_url('instagram', pending))

    accounts = connector.complete_connection('instagram', 'auth-code', state)

    assert len(accounts) == 1
    account = accounts[0]
    assert account.external_account_id == 'ig-77'
    assert account.username == 'acme.ig'
    assert account.account_type == 'business'
    assert vault.decrypt(account.access_token) == 'pt-2'


def test_linkedin_connect_keeps_refresh_token_and_expiry(connector, pending, session, vault):
    session.post.return_value = FakeResponse(json_data={
        'access_token': 'li-access', 'refresh_token': 'li-refresh', 'expires_in': 5184000,
    })
    session.get.return_value = FakeResponse(json_data=LI_PROFILE)
    state = _state_from(connector.build_authorization_url('linkedin', pending))

    accounts = connector.complete_connection('linkedin', 'auth-code', state)

    account = accounts[0]
    assert account.external_account_id == 'li-abc'
    assert account.display_name == 'Ada Lovelace'
    assert account.avatar_url == 'https://media.licdn.com/large.jpg'
    assert vault.decrypt(account.access_token) == 'li-access'
    assert vault.decrypt(account.refresh_token) == 'li-refresh'
    assert account.token_expires_at is not None

    headers = session.get.call_args.kwargs['headers']
    assert headers['Authorization'] == 'Bearer li-access'
    assert session.post.call_args.kwargs['data']['grant_type'] == 'authorization_code'


def test_altered_state_signature_creates_nothing(connector, pending, session, db_path):
    state = _state_from(connector.build_authorization_url('facebook', pending))
    body, sig = state.split('.')
    tampered = f"{body}.{('A' if sig[0] != 'A' else 'B')}{sig[1:]}"

    with pytest.raises(InvalidStateError):
        connector.complete_connection('facebook', 'auth-code', tampered)

    assert _account_count(db_path) == 0
    session.get.assert_not_called()


def test_replayed_state_is_rejected_before_any_exchange(connector, pending, session, db_path):
    session.get.side_effect = _facebook_responses()
    state = _state_from(connector.build_authorization_url('facebook', pending))
    connector.complete_connection('facebook', 'auth-code', state)
    calls = session.get.call_count

    with pytest.raises(InvalidStateError, match='already been used'):
        connector.complete_connection('facebook', 'auth-code', state)
    assert session.get.call_count == calls


def test_state_for_another_platform_is_rejected(connector, pending):
    state = _state_from(connector.build_authorization_url('facebook', pending))
    with pytest.raises(InvalidStateError):
        connector.complete_connection('linkedin', 'auth-code', state)


def test_rejected_code_persists_nothing(connector, pending, session, db_path):
    session.get.return_value = FakeResponse(400, {'error': {'message': 'Invalid verification code'}})
    state = _state_from(connector.build_authorization_url('facebook', pending))

    with pytest.raises(OAuthExchangeError, match='Invalid verification code'):
        connector.complete_connection('facebook', 'bad-code', state)

    assert _account_count(db_path) == 0
    assert fetch_one(db_path, "SELECT COUNT(*) AS cnt FROM oauth_state_nonces")['cnt'] == 0


def test_login_without_pages_is_a_profile_error(connector, pending, session, db_path):
    session.get.side_effect = _facebook_responses({'data': []})
    state = _state_from(connector.build_authorization_url('facebook', pending))

    with pytest.raises(ProfileFetchError):
        connector.complete_connection('facebook', 'auth-code', state)
    assert _account_count(db_path) == 0


def test_reconnect_reactivates_the_same_row(connector, pending, session, make_account, vault, db_path):
    account_id = make_account(platform='linkedin', external_account_id='li-abc',
                              access_token='old', is_active=False, last_error='Token refresh failed')
    session.post.return_value = FakeResponse(json_data={'access_token': 'new-access', 'expires_in': 3600})
    session.get.return_value = FakeResponse(json_data=LI_PROFILE)
    state = _state_from(connector.build_authorization_url('linkedin', pending))

    accounts = connector.complete_connection('linkedin', 'auth-code', state)

    assert accounts[0].id == account_id
    assert accounts[0].is_active
    assert accounts[0].last_error is None
    assert vault.decrypt(accounts[0].access_token) == 'new-access'
    assert _account_count(db_path) == 1


def test_disconnect_soft_deletes(connector, make_account, org_id, admin, db_path):
    account_id = make_account()
    connector.disconnect_account(account_id, org_id, user_id=admin.id)

    account = connector.list_accounts(org_id)[0]
    assert not account.is_active
    assert account.last_error == 'Account disconnected by user'
    assert account.needs_reconnect
    assert 'access_token' not in account.to_dict()


def test_disconnect_other_organization_is_not_found(connector, make_account):
    account_id = make_account()
    with pytest.raises(NotFoundError):
        connector.disconnect_account(account_id, 'some-other-org')


def test_linkedin_profile_without_localized_names():
    identity = normalize_linkedin_profile({
        'id': 'x1',
        'firstName': {'localized': {'en_US': 'Grace'}, 'preferredLocale': {'language': 'en', 'country': 'US'}},
        'lastName': {'localized': {'en_US': 'Hopper'}},
    })
    assert identity.display_name == 'Grace Hopper'
    assert identity.username is None
    assert identity.avatar_url is None


def test_non_json_token_response_is_an_exchange_error(connector, pending, session, db_path):
    session.get.return_value = FakeResponse(200, content=b'<html>maintenance</html>')
    state = _state_from(connector.build_authorization_url('facebook', pending))

    with pytest.raises(OAuthExchangeError, match='not JSON'):
        connector.complete_connection('facebook', 'auth-code', state)
    assert _account_count(db_path) == 0


def test_non_json_linkedin_token_response_is_an_exchange_error(connector, pending, session):
    session.post.return_value = FakeResponse(200, content=b'<html></html>')
    state = _state_from(connector.build_authorization_url('linkedin', pending))

    with pytest.raises(OAuthExchangeError, match='not JSON'):
        connector.complete_connection('linkedin', 'auth-code', state)


def test_non_json_profile_response_is_a_profile_error(connector, pending, session, db_path):
    session.post.return_value = FakeResponse(json_data={'access_token': 'li-access', 'expires_in': 3600})
    session.get.return_value = FakeResponse(200, content=b'')
    state = _state_from(connector.build_authorization_url('linkedin', pending))

    with pytest.raises(ProfileFetchError, match='not JSON'):
        connector.complete_connection('linkedin', 'auth-code', state)
    assert _account_count(db_path) == 0
