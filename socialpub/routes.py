"""
JSON routes for the publishing pipeline.

All routes are registered on the socialpub Blueprint with prefix /api/.
"""

import datetime
import hmac
import logging
from urllib.parse import urlencode

from flask import jsonify, redirect, request
from flask_login import current_user, login_required, login_user, logout_user

from socialpub import audit
from socialpub.auth import User, admin_required, org_member_required
from socialpub.errors import (
    ConfigError, NotFoundError, SocialPubError, UnauthorizedError, ValidationError,
)
from socialpub.models import Platform, get_jobs_for_post, get_post
from socialpub.oauth_state import PendingConnection
from socialpub.posts import compose_warnings, create_post, delete_post, list_posts

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFoundError, 404),
    (UnauthorizedError, 403),
)


def error_status(error):
    for cls, status in ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 400


def _parse_schedule(value):
    """Accept a Unix timestamp or an ISO-8601 string."""
    if value in (None, ''):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        raise ValidationError(f'Invalid scheduled_for: {value}') from None


def _json_body():
    return request.get_json(silent=True) or {}


def _platform(platform):
    try:
        return Platform.parse(platform)
    except ValueError as e:
        raise NotFoundError(str(e)) from e


def register_routes(bp, services):
    """Register all API routes on the given Blueprint."""
    db_path = services.config.database_path
    connector = services.connector
    refresher = services.refresher
    dispatcher = services.dispatcher

    def dashboard_redirect(**params):
        return redirect(f"{services.config.dashboard_url}?{urlencode(params)}")

    @bp.errorhandler(SocialPubError)
    def handle_error(error):
        return jsonify({'error': str(error)}), error_status(error)

    # =========================================================================
    # AUTH
    # =========================================================================

    @bp.route('/login', methods=['POST'])
    def login():
        data = _json_body()
        user = User.get_by_login((data.get('username') or '').strip(), db_path)
        if user and user.is_active and user.check_password(data.get('password') or ''):
            login_user(user)
            user.update_last_login(db_path)
            return jsonify({'user': user.to_dict()})
        return jsonify({'error': 'Invalid username/email or password'}), 401

    @bp.route('/logout', methods=['POST'])
    @login_required
    def logout():
        logout_user()
        return jsonify({'success': True})

    # =========================================================================
    # OAUTH
    # =========================================================================

    @bp.route('/oauth/<platform>/authorize', methods=['POST'])
    @admin_required
    def oauth_authorize(platform):
        """Return the provider URL the browser should be sent to."""
        platform = _platform(platform)
        if not connector.provider(platform).available():
            raise ConfigError(f'{platform.value} credentials are not configured')
        pending = PendingConnection(
            organization_id=current_user.organization_id,
            user_id=current_user.id,
            external_account_id=_json_body().get('external_account_id'),
        )
        return jsonify({'authorization_url': connector.build_authorization_url(platform, pending)})

    @bp.route('/oauth/<platform>/callback')
    def oauth_callback(platform):
        """Provider redirect target. The signed state identifies the organization and user."""
        error = request.args.get('error')
        if error:
            description = request.args.get('error_description') or error
            logger.warning(f"OAuth callback for {platform} returned error: {description}")
            return dashboard_redirect(error=description)

        code = request.args.get('code')
        state = request.args.get('state')
        if not code or not state:
            return dashboard_redirect(error='Missing authorization code or state')

        try:
            accounts = connector.complete_connection(_platform(platform), code, state)
        except SocialPubError as e:
            logger.warning(f"OAuth callback for {platform} failed: {e}")
            return dashboard_redirect(error=str(e))
        return dashboard_redirect(connected=platform, count=len(accounts))

    # =========================================================================
    # SOCIAL ACCOUNTS
    # =========================================================================

    @bp.route('/accounts')
    @org_member_required
    def list_accounts():
        accounts = connector.list_accounts(current_user.organization_id, request.args.get('platform'))
        return jsonify({'accounts': [a.to_dict() for a in accounts]})

    @bp.route('/accounts/<account_id>/refresh', methods=['POST'])
    @admin_required
    def refresh_account(account_id):
        account = refresher.refresh_account(account_id, current_user.organization_id,
                                            user_id=current_user.id)
        return jsonify({'account': account.to_dict()})

    @bp.route('/accounts/<account_id>', methods=['DELETE'])
    @admin_required
    def disconnect_account(account_id):
        connector.disconnect_account(account_id, current_user.organization_id, user_id=current_user.id)
        return jsonify({'success': True})

    # =========================================================================
    # POSTS
    # =========================================================================

    @bp.route('/posts', methods=['GET'])
    @org_member_required
    def posts_index():
        posts = list_posts(db_path, current_user.organization_id, status=request.args.get('status'))
        return jsonify({'posts': [p.to_dict() for p in posts]})

    @bp.route('/posts', methods=['POST'])
    @org_member_required
    def posts_create():
        data = _json_body()
        post = create_post(
            db_path, current_user.organization_id,
            content=data.get('content', ''),
            target_platforms=data.get('target_platforms') or [],
            user_id=current_user.id,
            hashtags=data.get('hashtags'),
            call_to_action=data.get('call_to_action'),
            media_urls=data.get('media_urls'),
            platform_variants=data.get('platform_variants'),
            scheduled_for=_parse_schedule(data.get('scheduled_for')),
        )
        if data.get('schedule'):
            dispatcher.enqueue_post(post.id, organization_id=current_user.organization_id,
                                    user_id=current_user.id)
            post = get_post(db_path, post.id)
        return jsonify({'post': post.to_dict(), 'warnings': compose_warnings(post)}), 201

    @bp.route('/posts/<post_id>/schedule', methods=['POST'])
    @org_member_required
    def posts_schedule(post_id):
        jobs = dispatcher.enqueue_post(
            post_id, organization_id=current_user.organization_id, user_id=current_user.id,
            scheduled_for=_parse_schedule(_json_body().get('scheduled_for')),
        )
        return jsonify({
            'post': get_post(db_path, post_id).to_dict(),
            'jobs': [j.to_dict() for j in jobs],
        })

    @bp.route('/posts/<post_id>', methods=['GET'])
    @org_member_required
    def posts_show(post_id):
        """Post with per-job delivery status."""
        post = get_post(db_path, post_id, organization_id=current_user.organization_id)
        if post is None:
            raise NotFoundError('Post not found')
        return jsonify({
            'post': post.to_dict(),
            'jobs': [j.to_dict() for j in get_jobs_for_post(db_path, post_id)],
        })

    @bp.route('/posts/<post_id>', methods=['DELETE'])
    @org_member_required
    def posts_delete(post_id):
        delete_post(db_path, post_id, current_user.organization_id, user_id=current_user.id)
        return jsonify({'success': True})

    # =========================================================================
    # JOBS
    # =========================================================================

    @bp.route('/jobs')
    @org_member_required
    def jobs_index():
        try:
            jobs = dispatcher.list_jobs(current_user.organization_id, status=request.args.get('status'),
                                        post_id=request.args.get('post_id'))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return jsonify({'jobs': [j.to_dict() for j in jobs]})

    @bp.route('/jobs/<job_id>/retry', methods=['POST'])
    @admin_required
    def jobs_retry(job_id):
        job = dispatcher.retry_job(job_id, organization_id=current_user.organization_id,
                                   user_id=current_user.id)
        return jsonify({'job': job.to_dict()})

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    @bp.route('/notifications')
    @org_member_required
    def notifications_index():
        unread_only = request.args.get('unread') == '1'
        return jsonify({'notifications': audit.list_notifications(
            db_path, current_user.organization_id, unread_only=unread_only)})

    @bp.route('/audit')
    @admin_required
    def audit_index():
        """Audit trail, optionally narrowed to one resource (``?resource_type=job&resource_id=...``)."""
        try:
            limit = min(int(request.args.get('limit', 100)), 500)
        except ValueError:
            raise ValidationError('limit must be an integer') from None
        events = audit.list_events(
            db_path, current_user.organization_id,
            resource_type=request.args.get('resource_type'),
            resource_id=request.args.get('resource_id'),
            limit=limit,
        )
        return jsonify({'events': events})

    # =========================================================================
    # EXTERNAL CRON
    # =========================================================================

    @bp.route('/cron/dispatch', methods=['POST'])
    def cron_dispatch():
        """One dispatcher pass for deployments driven by an external scheduler."""
        expected = services.config.cron_secret
        provided = request.headers.get('X-Cron-Secret', '')
        if not expected or not hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
            return jsonify({'error': 'Invalid cron secret'}), 401
        requeued = dispatcher.requeue_stale_jobs()
        results = dispatcher.poll_and_process()
        return jsonify({
            'processed': len(results),
            'requeued': requeued,
            'results': results,
        })
