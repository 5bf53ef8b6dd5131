"""
Signed OAuth ``state`` tokens.

The state binds an authorization request to its callback: platform,
organization, initiating user, and an optional pre-selected account. It is
``b64(json) + '.' + b64(hmac_sha256)``, carries its own expiry, and each
nonce may be consumed only once.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import sqlite3
import time

from socialpub.errors import InvalidStateError
from socialpub.models import get_social_db

DEFAULT_STATE_TTL = 600


def _b64encode(raw):
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')


def _b64decode(text):
    padding = '=' * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + padding).encode('ascii'))


class PendingConnection:
    """Who is connecting what, captured when the OAuth flow starts."""

    def __init__(self, organization_id, user_id, external_account_id=None):
        self.organization_id = organization_id
        self.user_id = user_id
        self.external_account_id = external_account_id


class OAuthState:
    """Decoded, verified state payload."""

    def __init__(self, platform, organization_id, user_id, external_account_id, nonce, expires_at):
        self.platform = platform
        self.organization_id = organization_id
        self.user_id = user_id
        self.external_account_id = external_account_id
        self.nonce = nonce
        self.expires_at = expires_at


class StateSigner:

    def __init__(self, secret, ttl=DEFAULT_STATE_TTL):
        if not secret:
            raise ValueError('State secret must not be empty')
        self._secret = secret.encode('utf-8') if isinstance(secret, str) else secret
        self.ttl = ttl

    def _sign(self, body):
        return hmac.new(self._secret, body, hashlib.sha256).digest()

    def sign(self, platform, pending, now=None):
        now = time.time() if now is None else now
        payload = {
            'platform': platform,
            'organization_id': pending.organization_id,
            'user_id': pending.user_id,
            'external_account_id': pending.external_account_id,
            'nonce': secrets.token_urlsafe(16),
            'expires_at': now + self.ttl,
        }
        body = json.dumps(payload, separators=(',', ':'), sort_keys=True).encode('utf-8')
        return f'{_b64encode(body)}.{_b64encode(self._sign(body))}'

    def verify(self, token, platform=None, now=None):
        """Check signature, expiry and platform. Does not consume the nonce."""
        if not token or token.count('.') != 1:
            raise InvalidStateError('Malformed OAuth state')
        body_part, sig_part = token.split('.')
        try:
            body = _b64decode(body_part)
            signature = _b64decode(sig_part)
        except (binascii.Error, ValueError) as e:
            raise InvalidStateError('Malformed OAuth state') from e

        if not hmac.compare_digest(signature, self._sign(body)):
            raise InvalidStateError('OAuth state signature mismatch')

        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidStateError('Malformed OAuth state') from e

        now = time.time() if now is None else now
        if payload.get('expires_at', 0) < now:
            raise InvalidStateError('OAuth state has expired')
        if platform is not None and payload.get('platform') != platform:
            raise InvalidStateError('OAuth state was issued for a different platform')

        return OAuthState(
            platform=payload['platform'],
            organization_id=payload['organization_id'],
            user_id=payload['user_id'],
            external_account_id=payload.get('external_account_id'),
            nonce=payload['nonce'],
            expires_at=payload['expires_at'],
        )


def consume_nonce(conn, state, now=None):
    """Record the state's nonce as used inside the caller's transaction.

    Raises InvalidStateError if the nonce was seen before (replay).
    """
    now = time.time() if now is None else now
    try:
        conn.execute(
            "INSERT INTO oauth_state_nonces (nonce, expires_at, used_at) VALUES (?, ?, ?)",
            (state.nonce, state.expires_at, now)
        )
    except sqlite3.IntegrityError:
        raise InvalidStateError('OAuth state has already been used') from None


def purge_expired_nonces(db_path, now=None):
    """Drop nonces whose state could no longer verify anyway."""
    now = time.time() if now is None else now
    conn = get_social_db(db_path)
    try:
        cur = conn.execute("DELETE FROM oauth_state_nonces WHERE expires_at < ?", (now,))
        conn.commit()
        return cur.rowcount
    finally:
        conn.close()
