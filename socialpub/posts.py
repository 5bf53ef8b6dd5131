"""Post authoring: create, list, and delete posts before they are queued."""

import json
import logging
import time
import uuid

from socialpub import audit
from socialpub.errors import NotFoundError, ValidationError
from socialpub.models import Platform, Post, PostStatus, get_post, get_social_db
from socialpub.posting import CHARACTER_LIMITS, content_for_platform

logger = logging.getLogger(__name__)


def _parse_platforms(target_platforms):
    if not target_platforms:
        raise ValidationError('Select at least one platform')
    platforms = []
    for value in target_platforms:
        try:
            platform = Platform.parse(value)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if platform not in platforms:
            platforms.append(platform)
    return platforms


VARIANT_TEXT_FIELDS = ('content', 'call_to_action')
VARIANT_LIST_FIELDS = ('hashtags', 'media_urls')


def _parse_variants(platform_variants):
    """Key variants by platform value; each must be a mapping of known fields."""
    if platform_variants is not None and not isinstance(platform_variants, dict):
        raise ValidationError('platform_variants must be an object keyed by platform')
    variants = {}
    for key, variant in (platform_variants or {}).items():
        try:
            platform = Platform.parse(key)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not isinstance(variant, dict):
            raise ValidationError(f'The {platform.value} variant must be an object')
        for field, value in variant.items():
            if field in VARIANT_TEXT_FIELDS:
                ok = value is None or isinstance(value, str)
            elif field in VARIANT_LIST_FIELDS:
                ok = value is None or (isinstance(value, list) and all(isinstance(v, str) for v in value))
            else:
                raise ValidationError(f'Unknown field in {platform.value} variant: {field}')
            if not ok:
                raise ValidationError(f'Invalid {field} in {platform.value} variant')
        variants[platform.value] = variant
    return variants


def compose_warnings(post):
    """Advisory notes for renditions that run past a platform's usual caption length."""
    warnings = []
    for platform in post.target_platforms:
        limit = CHARACTER_LIMITS[platform.value]
        length = len(content_for_platform(post, platform).caption())
        if length > limit:
            warnings.append(f'{platform.value} captions are usually at most {limit} characters ({length} given)')
    return warnings


def create_post(db_path, organization_id, content, target_platforms, user_id=None, hashtags=None,
                call_to_action=None, media_urls=None, platform_variants=None, scheduled_for=None):
    platforms = _parse_platforms(target_platforms)
    hashtags = [h.lstrip('#') for h in (hashtags or []) if h and h.strip('#')]
    media_urls = list(media_urls or [])
    platform_variants = _parse_variants(platform_variants)

    if not (content or '').strip() and not media_urls:
        raise ValidationError('A post needs text or media')

    post_id = str(uuid.uuid4())
    now = time.time()
    conn = get_social_db(db_path)
    try:
        conn.execute(
            "INSERT INTO posts (id, organization_id, created_by, content, hashtags, call_to_action, "
            "media_urls, platform_variants, target_platforms, status, scheduled_for, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?)",
            (post_id, organization_id, user_id, content or '', json.dumps(hashtags), call_to_action,
             json.dumps(media_urls), json.dumps(platform_variants),
             json.dumps([p.value for p in platforms]), scheduled_for, now, now)
        )
        audit.record_event(
            db_path, 'post.create', 'post', post_id, organization_id=organization_id, user_id=user_id,
            new_values={'target_platforms': [p.value for p in platforms], 'scheduled_for': scheduled_for},
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()
    logger.info(f"Post {post_id} created for {', '.join(p.value for p in platforms)}")
    post = get_post(db_path, post_id)
    for warning in compose_warnings(post):
        logger.warning(f"Post {post_id}: {warning}")
    return post


def list_posts(db_path, organization_id, status=None, limit=100):
    conn = get_social_db(db_path)
    try:
        if status:
            rows = conn.execute(
                "SELECT * FROM posts WHERE organization_id = ? AND status = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (organization_id, PostStatus(status).value, limit)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM posts WHERE organization_id = ? ORDER BY created_at DESC LIMIT ?",
                (organization_id, limit)
            ).fetchall()
        return [Post.from_row(r) for r in rows]
    finally:
        conn.close()


def delete_post(db_path, post_id, organization_id, user_id=None):
    """Delete a post that was never queued. Posts with job history are kept."""
    conn = get_social_db(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM posts WHERE id = ? AND organization_id = ?", (post_id, organization_id)
        ).fetchone()
        if not row:
            raise NotFoundError('Post not found')
        jobs = conn.execute(
            "SELECT COUNT(*) AS cnt FROM job_queue WHERE post_id = ?", (post_id,)
        ).fetchone()['cnt']
        if jobs:
            raise ValidationError('Posts that have been queued cannot be deleted')
        conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
        audit.record_event(
            db_path, 'post.delete', 'post', post_id, organization_id=organization_id, user_id=user_id,
            old_values={'status': row['status']}, conn=conn,
        )
        conn.commit()
    finally:
        conn.close()
