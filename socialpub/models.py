"""
Database schema and row types for the publishing pipeline.

SQLite holds organizations, users, connected social accounts, posts, the job
queue, consumed OAuth state nonces, the audit log, and operator
notifications. Timestamps are Unix epoch seconds stored as REAL.
"""

import json
import sqlite3
from enum import Enum

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS social_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS organizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    username TEXT UNIQUE NOT NULL,
    email TEXT,
    password_hash TEXT NOT NULL,
    display_name TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'member',
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at REAL NOT NULL,
    last_login REAL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS social_accounts (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    external_account_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    username TEXT,
    avatar_url TEXT,
    account_type TEXT DEFAULT 'page',
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_expires_at REAL,
    scopes TEXT DEFAULT '[]',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_error TEXT,
    last_refresh_at REAL,
    connected_by TEXT,
    created_at REAL NOT NULL,
    updated_at REAL,
    UNIQUE(organization_id, platform, external_account_id),
    FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS posts (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    created_by TEXT,
    content TEXT NOT NULL DEFAULT '',
    hashtags TEXT DEFAULT '[]',
    call_to_action TEXT,
    media_urls TEXT DEFAULT '[]',
    platform_variants TEXT DEFAULT '{}',
    target_platforms TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'draft',
    scheduled_for REAL,
    published_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL,
    FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS job_queue (
    id TEXT PRIMARY KEY,
    post_id TEXT NOT NULL,
    social_account_id TEXT NOT NULL,
    organization_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    scheduled_for REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    last_attempt_at REAL,
    last_error TEXT,
    failure_kind TEXT,
    platform_post_id TEXT,
    platform_response TEXT,
    created_at REAL NOT NULL,
    updated_at REAL,
    CHECK (attempts <= max_attempts),
    FOREIGN KEY (post_id) REFERENCES posts(id),
    FOREIGN KEY (social_account_id) REFERENCES social_accounts(id)
);

CREATE INDEX IF NOT EXISTS idx_job_queue_due ON job_queue (status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_job_queue_post ON job_queue (post_id);

CREATE TABLE IF NOT EXISTS oauth_state_nonces (
    nonce TEXT PRIMARY KEY,
    expires_at REAL NOT NULL,
    used_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id TEXT PRIMARY KEY,
    organization_id TEXT,
    user_id TEXT,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    old_values TEXT,
    new_values TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT,
    resource_type TEXT,
    resource_id TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);
"""


class Platform(str, Enum):
    FACEBOOK = 'facebook'
    INSTAGRAM = 'instagram'
    LINKEDIN = 'linkedin'

    @classmethod
    def parse(cls, value):
        """Return the Platform for ``value`` or raise ValueError."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f'Unsupported platform: {value}') from None


class PostStatus(str, Enum):
    DRAFT = 'draft'
    SCHEDULED = 'scheduled'
    PUBLISHED = 'published'
    FAILED = 'failed'


class JobStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class FailureKind(str, Enum):
    TRANSIENT = 'transient'
    VALIDATION = 'validation'
    RECONNECT_REQUIRED = 'reconnect_required'


def get_social_db(db_path):
    """Get a database connection with Row factory."""
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def create_social_tables(db_path):
    """Create tables if they don't exist and record the schema version."""
    conn = get_social_db(db_path)
    try:
        conn.executescript(_CREATE_TABLES_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO social_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),)
        )
        conn.commit()
    finally:
        conn.close()


def _loads(value, default):
    if value is None or value == '':
        return default
    return json.loads(value)


class SocialAccount:
    """A connected identity on one platform for one organization."""

    def __init__(self, id, organization_id, platform, external_account_id, display_name,
                 access_token, username=None, avatar_url=None, account_type='page',
                 refresh_token=None, token_expires_at=None, scopes=None, is_active=True,
                 last_error=None, last_refresh_at=None, connected_by=None,
                 created_at=None, updated_at=None):
        self.id = id
        self.organization_id = organization_id
        self.platform = Platform.parse(platform)
        self.external_account_id = external_account_id
        self.display_name = display_name
        self.username = username
        self.avatar_url = avatar_url
        self.account_type = account_type
        # Both token fields hold vault ciphertext, never plaintext
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.token_expires_at = token_expires_at
        self.scopes = set(scopes or ())
        self.is_active = bool(is_active)
        self.last_error = last_error
        self.last_refresh_at = last_refresh_at
        self.connected_by = connected_by
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def needs_reconnect(self):
        return not self.is_active and bool(self.last_error)

    @classmethod
    def from_row(cls, row):
        if row is None:
            return None
        return cls(
            id=row['id'],
            organization_id=row['organization_id'],
            platform=row['platform'],
            external_account_id=row['external_account_id'],
            display_name=row['display_name'],
            username=row['username'],
            avatar_url=row['avatar_url'],
            account_type=row['account_type'],
            access_token=row['access_token'],
            refresh_token=row['refresh_token'],
            token_expires_at=row['token_expires_at'],
            scopes=_loads(row['scopes'], []),
            is_active=row['is_active'],
            last_error=row['last_error'],
            last_refresh_at=row['last_refresh_at'],
            connected_by=row['connected_by'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def to_dict(self):
        """Public view of the account. Credentials are never included."""
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'platform': self.platform.value,
            'external_account_id': self.external_account_id,
            'display_name': self.display_name,
            'username': self.username,
            'avatar_url': self.avatar_url,
            'account_type': self.account_type,
            'token_expires_at': self.token_expires_at,
            'scopes': sorted(self.scopes),
            'is_active': self.is_active,
            'last_error': self.last_error,
            'last_refresh_at': self.last_refresh_at,
            'needs_reconnect': self.needs_reconnect,
        }


class Post:
    """Content intended for one or more platforms."""

    def __init__(self, id, organization_id, content, target_platforms, status=PostStatus.DRAFT,
                 hashtags=None, call_to_action=None, media_urls=None, platform_variants=None,
                 created_by=None, scheduled_for=None, published_at=None,
                 created_at=None, updated_at=None):
        self.id = id
        self.organization_id = organization_id
        self.content = content or ''
        self.target_platforms = [Platform.parse(p) for p in target_platforms]
        self.status = PostStatus(status)
        self.hashtags = list(hashtags or [])
        self.call_to_action = call_to_action
        self.media_urls = list(media_urls or [])
        self.platform_variants = dict(platform_variants or {})
        self.created_by = created_by
        self.scheduled_for = scheduled_for
        self.published_at = published_at
        self.created_at = created_at
        self.updated_at = updated_at

    @classmethod
    def from_row(cls, row):
        if row is None:
            return None
        return cls(
            id=row['id'],
            organization_id=row['organization_id'],
            content=row['content'],
            target_platforms=_loads(row['target_platforms'], []),
            status=row['status'],
            hashtags=_loads(row['hashtags'], []),
            call_to_action=row['call_to_action'],
            media_urls=_loads(row['media_urls'], []),
            platform_variants=_loads(row['platform_variants'], {}),
            created_by=row['created_by'],
            scheduled_for=row['scheduled_for'],
            published_at=row['published_at'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'content': self.content,
            'hashtags': self.hashtags,
            'call_to_action': self.call_to_action,
            'media_urls': self.media_urls,
            'platform_variants': self.platform_variants,
            'target_platforms': [p.value for p in self.target_platforms],
            'status': self.status.value,
            'scheduled_for': self.scheduled_for,
            'published_at': self.published_at,
            'created_by': self.created_by,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class Job:
    """One attempted delivery of one post to one social account."""

    def __init__(self, id, post_id, social_account_id, organization_id, platform, scheduled_for,
                 status=JobStatus.PENDING, attempts=0, max_attempts=3, last_attempt_at=None,
                 last_error=None, failure_kind=None, platform_post_id=None,
                 platform_response=None, created_at=None, updated_at=None):
        self.id = id
        self.post_id = post_id
        self.social_account_id = social_account_id
        self.organization_id = organization_id
        self.platform = Platform.parse(platform)
        self.scheduled_for = scheduled_for
        self.status = JobStatus(status)
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.last_attempt_at = last_attempt_at
        self.last_error = last_error
        self.failure_kind = FailureKind(failure_kind) if failure_kind else None
        self.platform_post_id = platform_post_id
        self.platform_response = platform_response
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def retryable(self):
        """True while the job is still expected to be delivered without operator action."""
        return self.status in (JobStatus.PENDING, JobStatus.PROCESSING)

    @property
    def needs_reconnect(self):
        return self.failure_kind == FailureKind.RECONNECT_REQUIRED

    @classmethod
    def from_row(cls, row):
        if row is None:
            return None
        return cls(
            id=row['id'],
            post_id=row['post_id'],
            social_account_id=row['social_account_id'],
            organization_id=row['organization_id'],
            platform=row['platform'],
            scheduled_for=row['scheduled_for'],
            status=row['status'],
            attempts=row['attempts'],
            max_attempts=row['max_attempts'],
            last_attempt_at=row['last_attempt_at'],
            last_error=row['last_error'],
            failure_kind=row['failure_kind'],
            platform_post_id=row['platform_post_id'],
            platform_response=_loads(row['platform_response'], None),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    def to_dict(self):
        return {
            'id': self.id,
            'post_id': self.post_id,
            'social_account_id': self.social_account_id,
            'organization_id': self.organization_id,
            'platform': self.platform.value,
            'scheduled_for': self.scheduled_for,
            'status': self.status.value,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_attempt_at': self.last_attempt_at,
            'last_error': self.last_error,
            'failure_kind': self.failure_kind.value if self.failure_kind else None,
            'platform_post_id': self.platform_post_id,
            'retryable': self.retryable,
            'needs_reconnect': self.needs_reconnect,
        }


def get_account(db_path, account_id, organization_id=None):
    conn = get_social_db(db_path)
    try:
        if organization_id is None:
            row = conn.execute("SELECT * FROM social_accounts WHERE id = ?", (account_id,)).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM social_accounts WHERE id = ? AND organization_id = ?",
                (account_id, organization_id)
            ).fetchone()
        return SocialAccount.from_row(row)
    finally:
        conn.close()


def get_post(db_path, post_id, organization_id=None):
    conn = get_social_db(db_path)
    try:
        if organization_id is None:
            row = conn.execute("SELECT * FROM posts WHERE id = ?", (post_id,)).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM posts WHERE id = ? AND organization_id = ?",
                (post_id, organization_id)
            ).fetchone()
        return Post.from_row(row)
    finally:
        conn.close()


def get_job(db_path, job_id):
    conn = get_social_db(db_path)
    try:
        row = conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
        return Job.from_row(row)
    finally:
        conn.close()


def get_jobs_for_post(db_path, post_id):
    conn = get_social_db(db_path)
    try:
        rows = conn.execute(
            "SELECT * FROM job_queue WHERE post_id = ? ORDER BY created_at", (post_id,)
        ).fetchall()
        return [Job.from_row(r) for r in rows]
    finally:
        conn.close()
