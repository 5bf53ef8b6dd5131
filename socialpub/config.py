"""
Process-wide configuration for the publishing pipeline.

All settings are read from environment variables once, at start-up, by
``Config.from_env()``. The resulting object is handed to every component;
nothing else in the package reads the environment.
"""

import base64
import binascii
import hashlib
import logging
import os
import secrets

from socialpub.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = 'socialpub.db'


def _env_bool(env, name, default):
    return env.get(name, 'true' if default else 'false').lower() == 'true'


def decode_token_key(raw):
    """Decode a 256-bit key given as base64 (urlsafe or standard) or hex."""
    raw = raw.strip()
    if len(raw) == 64:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    for decoder in (base64.urlsafe_b64decode, base64.b64decode):
        try:
            key = decoder(raw)
        except (binascii.Error, ValueError):
            continue
        if len(key) == 32:
            return key
    raise ConfigError('TOKEN_ENCRYPTION_KEY must be 32 bytes encoded as base64 or hex')


class Config:
    """Typed settings with the defaults used in production."""

    def __init__(self, database_path=DEFAULT_DATABASE_PATH, secret_key=None, token_key=None,
                 state_secret=None, state_ttl=600,
                 fb_app_id='', fb_app_secret='',
                 linkedin_client_id='', linkedin_client_secret='',
                 public_base_url='http://localhost:8189',
                 dashboard_url=None,
                 http_timeout=30, max_attempts=3, batch_size=10,
                 dispatch_concurrency=4, poll_interval=60,
                 stale_after=15 * 60, refresh_window=7 * 24 * 3600, refresh_skew=300,
                 retry_backoff='none', retry_delay=60, retry_max_delay=3600,
                 scheduler_enabled=True, cron_secret=''):
        self.database_path = database_path
        self.secret_key = secret_key or secrets.token_hex(32)
        if token_key is None:
            # Same fallback as the Flask secret: derive a stable key from it
            logger.warning('TOKEN_ENCRYPTION_KEY not set; deriving token key from SECRET_KEY')
            token_key = hashlib.sha256(self.secret_key.encode('utf-8')).digest()
        if len(token_key) != 32:
            raise ConfigError('Token encryption key must be exactly 32 bytes')
        self.token_key = token_key
        self.state_secret = state_secret or self.secret_key
        self.state_ttl = state_ttl
        self.fb_app_id = fb_app_id
        self.fb_app_secret = fb_app_secret
        self.linkedin_client_id = linkedin_client_id
        self.linkedin_client_secret = linkedin_client_secret
        self.public_base_url = public_base_url.rstrip('/')
        self.dashboard_url = (dashboard_url or f'{self.public_base_url}/social-accounts').rstrip('/')
        self.http_timeout = http_timeout
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.dispatch_concurrency = dispatch_concurrency
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self.refresh_window = refresh_window
        self.refresh_skew = refresh_skew
        self.retry_backoff = retry_backoff
        self.retry_delay = retry_delay
        self.retry_max_delay = retry_max_delay
        self.scheduler_enabled = scheduler_enabled
        self.cron_secret = cron_secret

    @property
    def facebook_available(self):
        return bool(self.fb_app_id and self.fb_app_secret)

    @property
    def linkedin_available(self):
        return bool(self.linkedin_client_id and self.linkedin_client_secret)

    def redirect_uri(self, platform):
        """OAuth callback URL registered with the provider."""
        return f'{self.public_base_url}/api/oauth/{platform}/callback'

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        secret_key = env.get('SECRET_KEY')
        if not secret_key and not env.get('TOKEN_ENCRYPTION_KEY'):
            raise ConfigError('Set TOKEN_ENCRYPTION_KEY (or at least SECRET_KEY) before starting')

        raw_key = env.get('TOKEN_ENCRYPTION_KEY', '')
        token_key = decode_token_key(raw_key) if raw_key else None

        return cls(
            database_path=env.get('DATABASE_PATH', DEFAULT_DATABASE_PATH),
            secret_key=secret_key,
            token_key=token_key,
            state_secret=env.get('STATE_SECRET'),
            state_ttl=int(env.get('OAUTH_STATE_TTL', 600)),
            fb_app_id=env.get('FB_APP_ID', ''),
            fb_app_secret=env.get('FB_APP_SECRET', ''),
            linkedin_client_id=env.get('LINKEDIN_CLIENT_ID', ''),
            linkedin_client_secret=env.get('LINKEDIN_CLIENT_SECRET', ''),
            public_base_url=env.get('PUBLIC_BASE_URL', 'http://localhost:8189'),
            dashboard_url=env.get('DASHBOARD_URL'),
            http_timeout=float(env.get('HTTP_TIMEOUT', 30)),
            max_attempts=int(env.get('MAX_ATTEMPTS', 3)),
            batch_size=int(env.get('DISPATCH_BATCH_SIZE', 10)),
            dispatch_concurrency=int(env.get('DISPATCH_CONCURRENCY', 4)),
            poll_interval=int(env.get('POLL_INTERVAL_SECONDS', 60)),
            stale_after=int(env.get('STALE_PROCESSING_SECONDS', 15 * 60)),
            refresh_window=int(env.get('REFRESH_WINDOW_SECONDS', 7 * 24 * 3600)),
            refresh_skew=int(env.get('REFRESH_SKEW_SECONDS', 300)),
            retry_backoff=env.get('RETRY_BACKOFF', 'none').lower(),
            retry_delay=int(env.get('RETRY_DELAY_SECONDS', 60)),
            retry_max_delay=int(env.get('RETRY_MAX_DELAY_SECONDS', 3600)),
            scheduler_enabled=_env_bool(env, 'SCHEDULER_ENABLED', True),
            cron_secret=env.get('CRON_SECRET', ''),
        )
