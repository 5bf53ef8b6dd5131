import pytest

from socialpub.auth import (
    User, create_organization, get_organization_by_name, get_organization_for_user, is_authorized,
)
from socialpub.models import get_social_db


def test_password_is_stored_hashed(admin, db_path):
    user = User.get_by_id(admin.id, db_path)
    assert user.password_hash != 'correct-horse'
    assert user.check_password('correct-horse')
    assert not user.check_password('wrong')


def test_lookup_by_username_or_email(admin, db_path):
    assert User.get_by_login('alice', db_path).id == admin.id
    assert User.get_by_login('ALICE@example.com', db_path).id == admin.id
    assert User.get_by_login('nobody', db_path) is None
    assert User.get_by_login('', db_path) is None


def test_roles(admin, db_path, org_id):
    member = User.create(org_id, 'bob', 'pw', 'Bob', 'member', db_path)
    assert admin.is_admin
    assert not member.is_admin
    with pytest.raises(ValueError):
        User.create(org_id, 'eve', 'pw', 'Eve', 'owner', db_path)


def test_organization_membership(admin, db_path, org_id):
    other_org = create_organization('Globex', db_path)

    assert get_organization_by_name('Globex', db_path) == other_org
    assert get_organization_for_user(admin.id, db_path) == org_id
    assert is_authorized(admin.id, org_id, db_path)
    assert not is_authorized(admin.id, other_org, db_path)
    assert not is_authorized(admin.id, None, db_path)


def test_inactive_user_has_no_organization(admin, db_path, org_id):
    conn = get_social_db(db_path)
    try:
        conn.execute("UPDATE users SET is_active = 0 WHERE id = ?", (admin.id,))
        conn.commit()
    finally:
        conn.close()

    assert get_organization_for_user(admin.id, db_path) is None
    assert not is_authorized(admin.id, org_id, db_path)


def test_update_last_login(admin, db_path):
    admin.update_last_login(db_path)
    assert User.get_by_id(admin.id, db_path).last_login == admin.last_login
