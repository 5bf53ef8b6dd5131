"""
Access-token lifecycle for connected accounts.

Before a token is used it is checked against its expiry and, when close to or
past it, refreshed with the provider. A failed refresh deactivates the account:
only the account holder reconnecting can fix it.
"""

import logging
import threading
import time

import requests

from socialpub import audit
from socialpub.errors import (
    DecryptionError, NoRefreshTokenError, NotFoundError, TokenRefreshError,
)
from socialpub.models import Platform, SocialAccount, get_account, get_social_db
from socialpub.oauth import FB_OAUTH_TOKEN, LI_TOKEN_URL

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 5184000  # 60 days


class _AccountLocks:
    """One lock per account id so concurrent jobs never race a refresh."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, account_id):
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock


class TokenRefresher:

    def __init__(self, config, vault, session=None):
        self.config = config
        self.vault = vault
        self.db_path = config.database_path
        self.http = session or requests
        self.timeout = config.http_timeout
        self.skew = config.refresh_skew
        self._locks = _AccountLocks()

    def ensure_fresh_token(self, account, now=None):
        """Return ``(access_token, account)`` with a token that is valid now.

        Raises TokenRefreshError when the account is inactive or the refresh
        fails; the account is left inactive with ``last_error`` set.
        """
        with self._locks.get(account.id):
            # Re-read under the lock: another job may have refreshed already
            current = get_account(self.db_path, account.id)
            if current is None:
                raise TokenRefreshError(f'Account {account.id} no longer exists')
            if not current.is_active:
                raise TokenRefreshError(
                    f'Account {current.display_name} is inactive: {current.last_error or "reconnect required"}')

            access_token = self._decrypt_or_fail(current)

            now = time.time() if now is None else now
            if current.token_expires_at is None or current.token_expires_at > now + self.skew:
                return access_token, current

            logger.info(f"Token for {current.platform.value} account {current.id} expired; refreshing")
            return self._refresh(current, access_token, now)

    def refresh_account(self, account_id, organization_id, user_id=None):
        """Operator-triggered refresh of one account."""
        account = get_account(self.db_path, account_id)
        if account is None or account.organization_id != organization_id:
            raise NotFoundError('Account not found')
        if not account.is_active:
            raise TokenRefreshError('Account is inactive; reconnect it to continue publishing')
        with self._locks.get(account.id):
            # Re-read under the lock: a job may have rotated the refresh token
            current = get_account(self.db_path, account.id)
            if current is None or not current.is_active:
                raise TokenRefreshError('Account is inactive; reconnect it to continue publishing')
            access_token = self._decrypt_or_fail(current)
            if current.token_expires_at is None:
                # Long-lived page tokens have nothing to refresh
                self._touch(current)
                return get_account(self.db_path, current.id)
            _, refreshed = self._refresh(current, access_token, time.time(), user_id=user_id)
            return refreshed

    def refresh_expiring_tokens(self, within=None, now=None):
        """Refresh every active token that expires inside the window.

        Returns ``(refreshed, failed)`` counts.
        """
        now = time.time() if now is None else now
        within = self.config.refresh_window if within is None else within
        conn = get_social_db(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM social_accounts WHERE is_active = 1 "
                "AND token_expires_at IS NOT NULL AND token_expires_at < ?",
                (now + within,)
            ).fetchall()
        finally:
            conn.close()

        refreshed = failed = 0
        for row in rows:
            account = SocialAccount.from_row(row)
            try:
                with self._locks.get(account.id):
                    current = get_account(self.db_path, account.id)
                    if (current is None or not current.is_active or current.token_expires_at is None
                            or current.token_expires_at >= now + within):
                        logger.debug(f"Account {account.id} changed since the sweep started; skipping")
                        continue
                    access_token = self._decrypt_or_fail(current)
                    self._refresh(current, access_token, now)
                refreshed += 1
            except TokenRefreshError as e:
                failed += 1
                logger.warning(f"Could not refresh {account.platform.value} account {account.id}: {e}")
        if rows:
            logger.info(f"Token sweep: {refreshed} refreshed, {failed} failed")
        return refreshed, failed

    # -------------------------------------------------------------------------

    def _refresh(self, account, access_token, now, user_id=None):
        try:
            if account.platform in (Platform.FACEBOOK, Platform.INSTAGRAM):
                new_access, new_refresh, expires_in = self._refresh_facebook(access_token)
            elif account.platform == Platform.LINKEDIN:
                new_access, new_refresh, expires_in = self._refresh_linkedin(account)
            else:
                raise TokenRefreshError(f'Unsupported platform for token refresh: {account.platform.value}')
        except TokenRefreshError as e:
            self._mark_failed(account, f'Token refresh failed: {e}', user_id=user_id)
            raise

        expires_at = now + float(expires_in or DEFAULT_EXPIRES_IN)
        conn = get_social_db(self.db_path)
        try:
            if new_refresh is None:
                conn.execute(
                    "UPDATE social_accounts SET access_token=?, token_expires_at=?, is_active=1, "
                    "last_error=NULL, last_refresh_at=?, updated_at=? WHERE id=?",
                    (self.vault.encrypt(new_access), expires_at, now, now, account.id)
                )
            else:
                conn.execute(
                    "UPDATE social_accounts SET access_token=?, refresh_token=?, token_expires_at=?, "
                    "is_active=1, last_error=NULL, last_refresh_at=?, updated_at=? WHERE id=?",
                    (self.vault.encrypt(new_access), self.vault.encrypt(new_refresh),
                     expires_at, now, now, account.id)
                )
            audit.record_event(
                self.db_path, 'account.refresh', 'social_account', account.id,
                organization_id=account.organization_id, user_id=user_id,
                old_values={'token_expires_at': account.token_expires_at},
                new_values={'token_expires_at': expires_at, 'is_active': True},
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Refreshed token for {account.platform.value} account {account.id}")
        return new_access, get_account(self.db_path, account.id)

    def _refresh_facebook(self, access_token):
        # Meta has no refresh-token grant; re-exchange the current token instead
        try:
            resp = self.http.get(FB_OAUTH_TOKEN, params={
                'grant_type': 'fb_exchange_token',
                'client_id': self.config.fb_app_id,
                'client_secret': self.config.fb_app_secret,
                'fb_exchange_token': access_token,
            }, timeout=self.timeout)
        except requests.RequestException as e:
            raise TokenRefreshError(f'Facebook token refresh failed: {e}') from e
        data = _json_or_empty(resp)
        if not resp.ok or data.get('error') or not data.get('access_token'):
            message = (data.get('error') or {}).get('message') if isinstance(data.get('error'), dict) else None
            raise TokenRefreshError(f'Facebook token refresh failed: {message or resp.status_code}')
        return data['access_token'], None, data.get('expires_in')

    def _refresh_linkedin(self, account):
        try:
            refresh_token = self.vault.decrypt(account.refresh_token)
        except DecryptionError as e:
            raise TokenRefreshError(f'Stored refresh token unreadable: {e}') from e
        if not refresh_token:
            raise NoRefreshTokenError('No refresh token available for LinkedIn')
        try:
            resp = self.http.post(LI_TOKEN_URL, data={
                'grant_type': 'refresh_token',
                'refresh_token': refresh_token,
                'client_id': self.config.linkedin_client_id,
                'client_secret': self.config.linkedin_client_secret,
            }, headers={'Content-Type': 'application/x-www-form-urlencoded'}, timeout=self.timeout)
        except requests.RequestException as e:
            raise TokenRefreshError(f'LinkedIn token refresh failed: {e}') from e
        data = _json_or_empty(resp)
        if not resp.ok or data.get('error') or not data.get('access_token'):
            raise TokenRefreshError(
                f"LinkedIn token refresh failed: {data.get('error_description') or resp.status_code}")
        return data['access_token'], data.get('refresh_token', refresh_token), data.get('expires_in')

    def _decrypt_or_fail(self, account):
        try:
            return self.vault.decrypt(account.access_token)
        except DecryptionError as e:
            reason = f'Stored token unreadable: {e}'
            self._mark_failed(account, reason)
            raise TokenRefreshError(reason) from e

    def _mark_failed(self, account, reason, user_id=None):
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            conn.execute(
                "UPDATE social_accounts SET is_active=0, last_error=?, updated_at=? WHERE id=?",
                (reason, now, account.id)
            )
            audit.record_event(
                self.db_path, 'account.refresh_failed', 'social_account', account.id,
                organization_id=account.organization_id, user_id=user_id,
                old_values={'is_active': account.is_active},
                new_values={'is_active': False, 'last_error': reason},
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()
        logger.error(f"{account.platform.value} account {account.id} deactivated: {reason}")
        audit.notify(
            self.db_path, account.organization_id, 'account_reconnect_required',
            f'Reconnect {account.platform.value} account {account.display_name}',
            message=reason, resource_type='social_account', resource_id=account.id,
        )

    def _touch(self, account):
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            conn.execute(
                "UPDATE social_accounts SET last_error=NULL, last_refresh_at=?, updated_at=? WHERE id=?",
                (now, now, account.id)
            )
            conn.commit()
        finally:
            conn.close()


def _json_or_empty(resp):
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
