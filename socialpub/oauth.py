"""
OAuth2 account connection for Facebook/Instagram (Meta Graph API) and LinkedIn.

Builds provider authorization URLs with a signed state, exchanges the
returned code for tokens, normalizes each provider's identity payload, and
stores the resulting accounts with their tokens encrypted.
"""

import json
import logging
import time
import uuid
from urllib.parse import urlencode

import requests

from socialpub import audit
from socialpub.errors import (
    InvalidStateError, NotFoundError, OAuthExchangeError, ProfileFetchError,
)
from socialpub.models import Platform, SocialAccount, get_account, get_social_db
from socialpub.oauth_state import consume_nonce

logger = logging.getLogger(__name__)

# =============================================================================
# Facebook / Instagram (Meta Graph API)
# =============================================================================

FB_GRAPH_BASE = 'https://graph.facebook.com/v21.0'
FB_OAUTH_AUTHORIZE = 'https://www.facebook.com/v21.0/dialog/oauth'
FB_OAUTH_TOKEN = f'{FB_GRAPH_BASE}/oauth/access_token'

FB_SCOPES = ['pages_manage_posts', 'pages_read_engagement', 'pages_show_list']
IG_SCOPES = ['instagram_basic', 'instagram_content_publish', 'pages_show_list']

# =============================================================================
# LinkedIn
# =============================================================================

LI_AUTHORIZE_URL = 'https://www.linkedin.com/oauth/v2/authorization'
LI_TOKEN_URL = 'https://www.linkedin.com/oauth/v2/accessToken'
LI_API_BASE = 'https://api.linkedin.com/v2'
LI_PROFILE_PROJECTION = (
    '(id,localizedFirstName,localizedLastName,vanityName,'
    'profilePicture(displayImage~:playableStreams))'
)

LI_SCOPES = ['w_member_social', 'r_liteprofile']


class NormalizedIdentity:
    """Provider-independent view of who an access token belongs to."""

    def __init__(self, external_account_id, display_name, username=None, avatar_url=None):
        self.external_account_id = str(external_account_id)
        self.display_name = display_name
        self.username = username
        self.avatar_url = avatar_url

    def __repr__(self):
        return f'<NormalizedIdentity {self.external_account_id} {self.display_name!r}>'


class TokenSet:

    def __init__(self, access_token, refresh_token=None, expires_in=None):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_in = expires_in

    def expires_at(self, now=None):
        if not self.expires_in:
            return None
        return (time.time() if now is None else now) + float(self.expires_in)


class ConnectedIdentity:
    """An identity plus the credentials to act as it."""

    def __init__(self, identity, tokens, scopes, account_type):
        self.identity = identity
        self.tokens = tokens
        self.scopes = scopes
        self.account_type = account_type


def _provider_message(resp, default):
    try:
        data = resp.json()
    except ValueError:
        return default
    if not isinstance(data, dict):
        return default
    err = data.get('error')
    if isinstance(err, dict):
        return err.get('message', default)
    return data.get('error_description') or err or data.get('message') or default


class _Provider:
    platform = None
    scopes = ()

    def __init__(self, config, session=None):
        self.config = config
        self.http = session or requests
        self.timeout = config.http_timeout

    def _get_json(self, url, error_cls, what, **kwargs):
        try:
            resp = self.http.get(url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise error_cls(f'{what} failed: {e}') from e
        if not resp.ok:
            raise error_cls(f'{what} failed: {_provider_message(resp, resp.status_code)}')
        try:
            data = resp.json()
        except ValueError as e:
            raise error_cls(f'{what} failed: response was not JSON') from e
        if not isinstance(data, dict):
            raise error_cls(f'{what} failed: unexpected response')
        if data.get('error'):
            raise error_cls(f'{what} failed: {_provider_message(resp, "unknown error")}')
        return data


class FacebookProvider(_Provider):
    """Facebook pages. Tokens are page tokens derived from a long-lived user token."""

    platform = Platform.FACEBOOK
    scopes = FB_SCOPES

    def available(self):
        return self.config.facebook_available

    def authorize_url(self, redirect_uri, state):
        return f'{FB_OAUTH_AUTHORIZE}?' + urlencode({
            'client_id': self.config.fb_app_id,
            'redirect_uri': redirect_uri,
            'scope': ','.join(self.scopes),
            'state': state,
            'response_type': 'code',
        })

    def exchange_code(self, code, redirect_uri):
        data = self._get_json(FB_OAUTH_TOKEN, OAuthExchangeError, 'Facebook code exchange', params={
            'client_id': self.config.fb_app_id,
            'client_secret': self.config.fb_app_secret,
            'redirect_uri': redirect_uri,
            'code': code,
        })
        short_token = data.get('access_token')
        if not short_token:
            raise OAuthExchangeError('Facebook code exchange returned no access token')

        # Exchange for a long-lived user token (about 60 days)
        long_data = self._get_json(FB_OAUTH_TOKEN, OAuthExchangeError, 'Facebook token exchange', params={
            'grant_type': 'fb_exchange_token',
            'client_id': self.config.fb_app_id,
            'client_secret': self.config.fb_app_secret,
            'fb_exchange_token': short_token,
        })
        return TokenSet(long_data.get('access_token') or short_token,
                        expires_in=long_data.get('expires_in'))

    def _managed_pages(self, user_token):
        data = self._get_json(f'{FB_GRAPH_BASE}/me/accounts', ProfileFetchError, 'Facebook page lookup', params={
            'access_token': user_token,
            'fields': 'id,name,username,access_token,picture{url},instagram_business_account',
        })
        return data.get('data', [])

    def fetch_identities(self, tokens):
        pages = self._managed_pages(tokens.access_token)
        if not pages:
            raise ProfileFetchError('No Facebook pages are managed by this login')
        connected = []
        for page in pages:
            picture = (page.get('picture') or {}).get('data', {}).get('url')
            identity = NormalizedIdentity(page['id'], page.get('name') or f"Page {page['id']}",
                                          username=page.get('username'), avatar_url=picture)
            # Page tokens minted from a long-lived user token do not expire
            connected.append(ConnectedIdentity(identity, TokenSet(page['access_token']),
                                               self.scopes, 'page'))
        return connected


class InstagramProvider(FacebookProvider):
    """Instagram business accounts, discovered through the pages they are linked to."""

    platform = Platform.INSTAGRAM
    scopes = IG_SCOPES

    def fetch_identities(self, tokens):
        pages = self._managed_pages(tokens.access_token)
        connected = []
        for page in pages:
            ig = page.get('instagram_business_account')
            if not ig:
                continue
            ig_id = ig['id']
            info = self._get_json(f'{FB_GRAPH_BASE}/{ig_id}', ProfileFetchError, 'Instagram profile lookup', params={
                'access_token': page['access_token'],
                'fields': 'id,username,name,profile_picture_url',
            })
            identity = NormalizedIdentity(
                ig_id,
                info.get('name') or info.get('username') or f'IG-{ig_id}',
                username=info.get('username'),
                avatar_url=info.get('profile_picture_url'),
            )
            connected.append(ConnectedIdentity(identity, TokenSet(page['access_token']),
                                               self.scopes, 'business'))
        if not connected:
            raise ProfileFetchError('No Instagram business account is linked to a managed Facebook page')
        return connected


class LinkedInProvider(_Provider):
    """LinkedIn member profiles. The only provider here that issues refresh tokens."""

    platform = Platform.LINKEDIN
    scopes = LI_SCOPES

    def available(self):
        return self.config.linkedin_available

    def authorize_url(self, redirect_uri, state):
        return f'{LI_AUTHORIZE_URL}?' + urlencode({
            'response_type': 'code',
            'client_id': self.config.linkedin_client_id,
            'redirect_uri': redirect_uri,
            'state': state,
            'scope': ' '.join(self.scopes),
        })

    def exchange_code(self, code, redirect_uri):
        try:
            resp = self.http.post(LI_TOKEN_URL, data={
                'grant_type': 'authorization_code',
                'code': code,
                'redirect_uri': redirect_uri,
                'client_id': self.config.linkedin_client_id,
                'client_secret': self.config.linkedin_client_secret,
            }, headers={'Content-Type': 'application/x-www-form-urlencoded'}, timeout=self.timeout)
        except requests.RequestException as e:
            raise OAuthExchangeError(f'LinkedIn code exchange failed: {e}') from e
        if not resp.ok:
            raise OAuthExchangeError(f'LinkedIn code exchange failed: {_provider_message(resp, resp.status_code)}')
        try:
            data = resp.json()
        except ValueError as e:
            raise OAuthExchangeError('LinkedIn code exchange failed: response was not JSON') from e
        if not isinstance(data, dict) or data.get('error') or not data.get('access_token'):
            raise OAuthExchangeError(f'LinkedIn code exchange failed: {_provider_message(resp, "no access token")}')
        return TokenSet(data['access_token'], data.get('refresh_token'), data.get('expires_in'))

    def fetch_identities(self, tokens):
        profile = self._get_json(f'{LI_API_BASE}/me', ProfileFetchError, 'LinkedIn profile lookup', params={
            'projection': LI_PROFILE_PROJECTION,
        }, headers={
            'Authorization': f'Bearer {tokens.access_token}',
            'X-Restli-Protocol-Version': '2.0.0',
        })
        if not profile.get('id'):
            raise ProfileFetchError('LinkedIn profile lookup returned no id')
        return [ConnectedIdentity(normalize_linkedin_profile(profile), tokens, self.scopes, 'profile')]


def _localized(field):
    """Pick a display string out of a LinkedIn MultiLocaleString."""
    if not isinstance(field, dict):
        return field or ''
    localized = field.get('localized') or {}
    preferred = field.get('preferredLocale') or {}
    key = f"{preferred.get('language', '')}_{preferred.get('country', '')}"
    if key in localized:
        return localized[key]
    return next(iter(localized.values()), '')


def normalize_linkedin_profile(profile):
    first = profile.get('localizedFirstName') or _localized(profile.get('firstName'))
    last = profile.get('localizedLastName') or _localized(profile.get('lastName'))
    avatar = None
    elements = (profile.get('profilePicture') or {}).get('displayImage~', {}).get('elements') or []
    if elements:
        identifiers = elements[-1].get('identifiers') or []
        if identifiers:
            avatar = identifiers[0].get('identifier')
    return NormalizedIdentity(
        profile['id'],
        f'{first} {last}'.strip() or 'LinkedIn Profile',
        username=profile.get('vanityName'),
        avatar_url=avatar,
    )


PROVIDERS = {
    Platform.FACEBOOK: FacebookProvider,
    Platform.INSTAGRAM: InstagramProvider,
    Platform.LINKEDIN: LinkedInProvider,
}


class AccountConnector:
    """Runs the authorization-code flow and owns SocialAccount writes on connect."""

    def __init__(self, config, vault, signer, session=None):
        self.config = config
        self.vault = vault
        self.signer = signer
        self.db_path = config.database_path
        self._session = session

    def provider(self, platform):
        platform = Platform.parse(platform)
        return PROVIDERS[platform](self.config, self._session)

    def build_authorization_url(self, platform, pending):
        platform = Platform.parse(platform)
        state = self.signer.sign(platform.value, pending)
        return self.provider(platform).authorize_url(self.config.redirect_uri(platform.value), state)

    def complete_connection(self, platform, code, state_token):
        """Verify state, exchange the code and store the connected account(s).

        Returns the list of stored SocialAccount objects. Either every
        account is written or none is.
        """
        platform = Platform.parse(platform)
        state = self.signer.verify(state_token, platform=platform.value)
        self._ensure_nonce_unused(state)

        provider = self.provider(platform)
        tokens = provider.exchange_code(code, self.config.redirect_uri(platform.value))
        connected = provider.fetch_identities(tokens)

        if state.external_account_id:
            connected = [c for c in connected
                         if c.identity.external_account_id == state.external_account_id]
            if not connected:
                raise ProfileFetchError(
                    f'Account {state.external_account_id} was not returned by {platform.value}')

        conn = get_social_db(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            consume_nonce(conn, state)
            account_ids = []
            for item in connected:
                account_id, old = self._upsert(conn, state, platform, item)
                account_ids.append(account_id)
                audit.record_event(
                    self.db_path, 'account.connect', 'social_account', account_id,
                    organization_id=state.organization_id, user_id=state.user_id,
                    old_values=old,
                    new_values={'platform': platform.value,
                                'external_account_id': item.identity.external_account_id,
                                'is_active': True},
                    conn=conn,
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(f"Connected {len(account_ids)} {platform.value} account(s) "
                    f"for organization {state.organization_id}")
        return [get_account(self.db_path, account_id) for account_id in account_ids]

    def _ensure_nonce_unused(self, state):
        conn = get_social_db(self.db_path)
        try:
            row = conn.execute("SELECT nonce FROM oauth_state_nonces WHERE nonce = ?",
                               (state.nonce,)).fetchone()
        finally:
            conn.close()
        if row:
            raise InvalidStateError('OAuth state has already been used')

    def _upsert(self, conn, state, platform, item):
        identity = item.identity
        now = time.time()
        access = self.vault.encrypt(item.tokens.access_token)
        refresh = self.vault.encrypt(item.tokens.refresh_token)
        existing = conn.execute(
            "SELECT id, is_active, display_name FROM social_accounts "
            "WHERE organization_id = ? AND platform = ? AND external_account_id = ?",
            (state.organization_id, platform.value, identity.external_account_id)
        ).fetchone()

        if existing:
            conn.execute(
                "UPDATE social_accounts SET display_name=?, username=?, avatar_url=?, account_type=?, "
                "access_token=?, refresh_token=?, token_expires_at=?, scopes=?, is_active=1, "
                "last_error=NULL, last_refresh_at=?, connected_by=?, updated_at=? WHERE id=?",
                (identity.display_name, identity.username, identity.avatar_url, item.account_type,
                 access, refresh, item.tokens.expires_at(now), json.dumps(list(item.scopes)),
                 now, state.user_id, now, existing['id'])
            )
            return existing['id'], {'is_active': bool(existing['is_active']),
                                    'display_name': existing['display_name']}

        account_id = str(uuid.uuid4())
        conn.execute(
            "INSERT INTO social_accounts "
            "(id, organization_id, platform, external_account_id, display_name, username, avatar_url, "
            "account_type, access_token, refresh_token, token_expires_at, scopes, is_active, "
            "last_refresh_at, connected_by, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)",
            (account_id, state.organization_id, platform.value, identity.external_account_id,
             identity.display_name, identity.username, identity.avatar_url, item.account_type,
             access, refresh, item.tokens.expires_at(now), json.dumps(list(item.scopes)),
             now, state.user_id, now, now)
        )
        return account_id, None

    def list_accounts(self, organization_id, platform=None):
        conn = get_social_db(self.db_path)
        try:
            sql = "SELECT * FROM social_accounts WHERE organization_id = ?"
            params = [organization_id]
            if platform:
                sql += " AND platform = ?"
                params.append(Platform.parse(platform).value)
            rows = conn.execute(sql + " ORDER BY platform, display_name", params).fetchall()
            return [SocialAccount.from_row(r) for r in rows]
        finally:
            conn.close()

    def disconnect_account(self, account_id, organization_id, user_id=None):
        """Soft-delete an account. Its jobs fail on their next attempt."""
        conn = get_social_db(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, is_active FROM social_accounts WHERE id = ? AND organization_id = ?",
                (account_id, organization_id)
            ).fetchone()
            if not row:
                raise NotFoundError('Account not found')
            conn.execute(
                "UPDATE social_accounts SET is_active=0, last_error=?, updated_at=? WHERE id=?",
                ('Account disconnected by user', time.time(), account_id)
            )
            audit.record_event(
                self.db_path, 'account.disconnect', 'social_account', account_id,
                organization_id=organization_id, user_id=user_id,
                old_values={'is_active': bool(row['is_active'])}, new_values={'is_active': False},
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Disconnected social account {account_id}")
