import json
import time
import uuid
from unittest.mock import MagicMock

import pytest
import requests

from socialpub.auth import User, create_organization
from socialpub.config import Config
from socialpub.models import create_social_tables, get_social_db
from socialpub.vault import TokenVault

TEST_TOKEN_KEY = bytes(range(32))


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, json_data=None, content=b''):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.text = json.dumps(json_data) if json_data is not None else ''

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError('No JSON body')
        return self._json

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f'{self.status_code} error', response=self)


@pytest.fixture
def config(tmp_path):
    return Config(
        database_path=str(tmp_path / 'socialpub.db'),
        secret_key='test-secret-key',
        token_key=TEST_TOKEN_KEY,
        fb_app_id='fb-app-id',
        fb_app_secret='fb-app-secret',
        linkedin_client_id='li-client-id',
        linkedin_client_secret='li-client-secret',
        public_base_url='https://pub.example.com',
        dispatch_concurrency=1,
        cron_secret='cron-secret',
    )


@pytest.fixture
def db_path(config):
    create_social_tables(config.database_path)
    return config.database_path


@pytest.fixture
def vault():
    return TokenVault(TEST_TOKEN_KEY)


@pytest.fixture
def session():
    """Stand-in for the requests module; tests script its responses."""
    return MagicMock()


@pytest.fixture
def org_id(db_path):
    return create_organization('Acme', db_path)


@pytest.fixture
def admin(db_path, org_id):
    return User.create(org_id, 'alice', 'correct-horse', 'Alice', 'admin', db_path,
                       email='Alice@Example.com')


@pytest.fixture
def make_account(db_path, vault, org_id):
    """Insert a social account row directly and return its id."""

    def _make(platform='facebook', external_account_id='page-1', access_token='page-token',
              refresh_token=None, token_expires_at=None, is_active=True, last_error=None,
              organization_id=None):
        account_id = str(uuid.uuid4())
        now = time.time()
        conn = get_social_db(db_path)
        try:
            conn.execute(
                "INSERT INTO social_accounts (id, organization_id, platform, external_account_id, "
                "display_name, account_type, access_token, refresh_token, token_expires_at, scopes, "
                "is_active, last_error, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, 'page', ?, ?, ?, '[]', ?, ?, ?, ?)",
                (account_id, organization_id or org_id, platform, external_account_id,
                 f'{platform} {external_account_id}', vault.encrypt(access_token),
                 vault.encrypt(refresh_token), token_expires_at, 1 if is_active else 0,
                 last_error, now, now)
            )
            conn.commit()
        finally:
            conn.close()
        return account_id

    return _make


def fetch_one(db_path, sql, params=()):
    conn = get_social_db(db_path)
    try:
        return conn.execute(sql, params).fetchone()
    finally:
        conn.close()


def fetch_all(db_path, sql, params=()):
    conn = get_social_db(db_path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()
