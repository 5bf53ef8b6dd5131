import pytest

from conftest import fetch_all
from socialpub.dispatcher import JobDispatcher
from socialpub.errors import NotFoundError, ValidationError
from socialpub.models import Platform
from socialpub.posts import compose_warnings, create_post, delete_post, list_posts
from socialpub.refresh import TokenRefresher


def test_create_post_stores_a_draft(db_path, org_id, admin):
    post = create_post(db_path, org_id, 'Spring sale', ['facebook', 'LinkedIn', 'facebook'],
                       user_id=admin.id, hashtags=['#sale', 'spring', '#'], call_to_action='Shop now',
                       media_urls=['https://cdn.example.com/a.jpg'])

    assert post.status.value == 'draft'
    assert post.target_platforms == [Platform.FACEBOOK, Platform.LINKEDIN]
    assert post.hashtags == ['sale', 'spring']
    assert post.media_urls == ['https://cdn.example.com/a.jpg']
    actions = fetch_all(db_path, "SELECT action, user_id FROM audit_logs WHERE resource_id = ?", (post.id,))
    assert [(a['action'], a['user_id']) for a in actions] == [('post.create', admin.id)]


def test_create_post_keeps_platform_variants(db_path, org_id):
    post = create_post(db_path, org_id, 'Default', ['facebook', 'linkedin'],
                       platform_variants={'LinkedIn': {'content': 'Professional take'}})
    assert post.platform_variants == {'linkedin': {'content': 'Professional take'}}


@pytest.mark.parametrize('platforms', [[], ['myspace']])
def test_create_post_rejects_bad_platforms(db_path, org_id, platforms):
    with pytest.raises(ValidationError):
        create_post(db_path, org_id, 'Hi', platforms)


def test_create_post_rejects_variant_for_unknown_platform(db_path, org_id):
    with pytest.raises(ValidationError, match='Unsupported platform'):
        create_post(db_path, org_id, 'Hi', ['facebook'], platform_variants={'tiktok': {'content': 'x'}})


def test_create_post_needs_text_or_media(db_path, org_id):
    with pytest.raises(ValidationError, match='text or media'):
        create_post(db_path, org_id, '   ', ['facebook'])
    post = create_post(db_path, org_id, '', ['instagram'], media_urls=['https://cdn.example.com/a.jpg'])
    assert post.content == ''


def test_long_captions_only_warn(db_path, org_id):
    post = create_post(db_path, org_id, 'x' * 2100, ['facebook', 'instagram'])

    warnings = compose_warnings(post)

    assert len(warnings) == 1
    assert warnings[0].startswith('facebook')


def test_list_posts_filters_by_status(db_path, org_id):
    create_post(db_path, org_id, 'One', ['facebook'])
    create_post(db_path, org_id, 'Two', ['facebook'])

    assert len(list_posts(db_path, org_id)) == 2
    assert len(list_posts(db_path, org_id, status='draft')) == 2
    assert list_posts(db_path, org_id, status='published') == []
    assert list_posts(db_path, 'other-org') == []


def test_delete_draft(db_path, org_id):
    post = create_post(db_path, org_id, 'Temp', ['facebook'])
    delete_post(db_path, post.id, org_id)
    assert list_posts(db_path, org_id) == []


def test_delete_other_organizations_post_is_not_found(db_path, org_id):
    post = create_post(db_path, org_id, 'Mine', ['facebook'])
    with pytest.raises(NotFoundError):
        delete_post(db_path, post.id, 'other-org')


def test_queued_post_cannot_be_deleted(config, vault, session, db_path, org_id, make_account):
    make_account()
    post = create_post(db_path, org_id, 'Queued', ['facebook'])
    JobDispatcher(config, TokenRefresher(config, vault, session=session), publishers={}).enqueue_post(post.id)

    with pytest.raises(ValidationError, match='queued'):
        delete_post(db_path, post.id, org_id)


@pytest.mark.parametrize('variants, message', [
    ({'facebook': 'Hi FB'}, 'must be an object'),
    ({'facebook': {'hashtags': 'sale'}}, 'Invalid hashtags'),
    ({'facebook': {'media_urls': [1, 2]}}, 'Invalid media_urls'),
    ({'facebook': {'content': 42}}, 'Invalid content'),
    ({'facebook': {'caption': 'x'}}, 'Unknown field'),
    (['facebook'], 'keyed by platform'),
])
def test_malformed_variants_are_rejected_before_saving(db_path, org_id, variants, message):
    with pytest.raises(ValidationError, match=message):
        create_post(db_path, org_id, 'Hi', ['facebook'], platform_variants=variants)
    assert list_posts(db_path, org_id) == []
