"""
Organization-scoped identity for the publishing API.

Provides flask-login integration, a User class with bcrypt password hashes,
organization membership checks, and access decorators for JSON routes.
"""

import functools
import time
import uuid

import bcrypt
from flask import jsonify
from flask_login import LoginManager, UserMixin, current_user

from socialpub.models import get_social_db

# Module-level reference set by init_login_manager
_db_path = None
login_manager = LoginManager()


class User(UserMixin):
    """User model backed by SQLite.

    Supported roles:
    - admin: connects and disconnects social accounts, retries failed jobs.
    - member: composes and schedules posts for the organization.
    """

    VALID_ROLES = ('admin', 'member')

    def __init__(self, id, organization_id, username, display_name, role, is_active,
                 password_hash=None, created_at=None, last_login=None, email=None):
        self.id = id
        self.organization_id = organization_id
        self.username = username
        self.email = email
        self.display_name = display_name
        self.role = role
        self._is_active = is_active
        self.password_hash = password_hash
        self.created_at = created_at
        self.last_login = last_login

    @property
    def is_active(self):
        return bool(self._is_active)

    @property
    def is_admin(self):
        return self.role == 'admin'

    def check_password(self, password):
        return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))

    @staticmethod
    def hash_password(password):
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    @classmethod
    def from_row(cls, row):
        if row is None:
            return None
        return cls(
            id=row['id'],
            organization_id=row['organization_id'],
            username=row['username'],
            display_name=row['display_name'],
            role=row['role'],
            is_active=row['is_active'],
            password_hash=row['password_hash'],
            created_at=row['created_at'],
            last_login=row['last_login'],
            email=row['email'],
        )

    @classmethod
    def get_by_id(cls, user_id, db_path):
        conn = get_social_db(db_path)
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return cls.from_row(row)
        finally:
            conn.close()

    @classmethod
    def get_by_login(cls, username_or_email, db_path):
        """Look a user up by username, then by (lowercased) email."""
        if not username_or_email:
            return None
        conn = get_social_db(db_path)
        try:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username_or_email,)).fetchone()
            if row is None:
                row = conn.execute("SELECT * FROM users WHERE email = ?",
                                   (username_or_email.lower(),)).fetchone()
            return cls.from_row(row)
        finally:
            conn.close()

    @classmethod
    def create(cls, organization_id, username, password, display_name, role, db_path, email=None):
        if role not in cls.VALID_ROLES:
            raise ValueError(f'Invalid role: {role}')
        user_id = str(uuid.uuid4())
        password_hash = cls.hash_password(password)
        email = email.lower() if email else None
        now = time.time()
        conn = get_social_db(db_path)
        try:
            conn.execute(
                "INSERT INTO users (id, organization_id, username, email, password_hash, display_name, "
                "role, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)",
                (user_id, organization_id, username, email, password_hash, display_name, role, now)
            )
            conn.commit()
            return cls(id=user_id, organization_id=organization_id, username=username,
                       display_name=display_name, role=role, is_active=1,
                       password_hash=password_hash, created_at=now, email=email)
        finally:
            conn.close()

    def update_last_login(self, db_path):
        now = time.time()
        conn = get_social_db(db_path)
        try:
            conn.execute("UPDATE users SET last_login = ? WHERE id = ?", (now, self.id))
            conn.commit()
            self.last_login = now
        finally:
            conn.close()

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'username': self.username,
            'email': self.email,
            'display_name': self.display_name,
            'role': self.role,
        }


def create_organization(name, db_path):
    org_id = str(uuid.uuid4())
    conn = get_social_db(db_path)
    try:
        conn.execute("INSERT INTO organizations (id, name, created_at) VALUES (?, ?, ?)",
                     (org_id, name, time.time()))
        conn.commit()
        return org_id
    finally:
        conn.close()


def get_organization_by_name(name, db_path):
    conn = get_social_db(db_path)
    try:
        row = conn.execute("SELECT id FROM organizations WHERE name = ?", (name,)).fetchone()
        return row['id'] if row else None
    finally:
        conn.close()


def get_organization_for_user(user_id, db_path):
    """Organization id the user belongs to, or None for unknown/inactive users."""
    user = User.get_by_id(user_id, db_path)
    if user is None or not user.is_active:
        return None
    return user.organization_id


def is_authorized(user_id, organization_id, db_path):
    return organization_id is not None and get_organization_for_user(user_id, db_path) == organization_id


def init_login_manager(app, db_path):
    """Initialize flask-login with the Flask app."""
    global _db_path
    _db_path = db_path

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return User.get_by_id(user_id, _db_path)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required'}), 401


def org_member_required(f):
    """Require a logged-in, active member of an organization."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if not is_authorized(current_user.id, current_user.organization_id, _db_path):
            return jsonify({'error': 'Not a member of this organization'}), 403
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Require an organization member with the admin role."""
    @functools.wraps(f)
    @org_member_required
    def decorated_function(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function
