"""
Job dispatcher: turns scheduled posts into per-platform delivery jobs and
works through the ones that are due.

Job lifecycle::

    pending -> processing -> completed
                          -> pending   (transient failure, attempts left)
                          -> failed    (attempts exhausted, invalid content,
                                        or the account needs reconnecting)

A job is claimed with a conditional update before any external call, so a
crash mid-publish leaves it visibly in ``processing`` until the stale sweep
requeues it. Delivery is therefore at-least-once.
"""

import json
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

from socialpub import audit
from socialpub.errors import (
    NotFoundError, PublishError, TokenRefreshError, ValidationError,
)
from socialpub.models import (
    FailureKind, Job, JobStatus, Post, PostStatus,
    get_account, get_job, get_post, get_social_db,
)
from socialpub.posting import build_publishers, content_for_platform
from socialpub.retry import policy_from_config

logger = logging.getLogger(__name__)


class JobDispatcher:

    def __init__(self, config, refresher, publishers=None, retry_policy=None):
        self.config = config
        self.db_path = config.database_path
        self.refresher = refresher
        self.publishers = publishers if publishers is not None else build_publishers(config)
        self.retry_policy = retry_policy or policy_from_config(config)

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue_post(self, post_id, organization_id=None, user_id=None, scheduled_for=None):
        """Create one pending job per target platform account and mark the post scheduled."""
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM posts WHERE id = ?", (post_id,)).fetchone()
            post = Post.from_row(row)
            if post is None or (organization_id and post.organization_id != organization_id):
                raise NotFoundError('Post not found')
            if not post.target_platforms:
                raise ValidationError('Select at least one platform before scheduling')
            if post.status != PostStatus.DRAFT:
                raise ValidationError(f'Post is already {post.status.value}')

            due = scheduled_for or post.scheduled_for or now
            jobs = []
            for platform in post.target_platforms:
                accounts = conn.execute(
                    "SELECT * FROM social_accounts WHERE organization_id = ? AND platform = ? AND is_active = 1",
                    (post.organization_id, platform.value)
                ).fetchall()
                if not accounts:
                    raise ValidationError(f'No active {platform.value} account is connected')
                for account in accounts:
                    job_id = str(uuid.uuid4())
                    conn.execute(
                        "INSERT INTO job_queue (id, post_id, social_account_id, organization_id, platform, "
                        "scheduled_for, status, attempts, max_attempts, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?, ?)",
                        (job_id, post.id, account['id'], post.organization_id, platform.value,
                         due, self.config.max_attempts, now, now)
                    )
                    jobs.append(job_id)

            conn.execute(
                "UPDATE posts SET status='scheduled', scheduled_for=?, updated_at=? WHERE id=?",
                (due, now, post.id)
            )
            audit.record_event(
                self.db_path, 'post.schedule', 'post', post.id,
                organization_id=post.organization_id, user_id=user_id,
                old_values={'status': post.status.value},
                new_values={'status': PostStatus.SCHEDULED.value, 'scheduled_for': due, 'jobs': jobs},
                conn=conn,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(f"Post {post_id}: scheduled {len(jobs)} job(s) for {due}")
        return [get_job(self.db_path, job_id) for job_id in jobs]

    # =========================================================================
    # CLAIM AND PROCESS
    # =========================================================================

    def claim_due_jobs(self, batch_size=None, now=None):
        """Claim up to ``batch_size`` due jobs, earliest first.

        Each claim is a conditional update on ``status='pending'``; a job
        another dispatcher got to first is skipped.
        """
        batch_size = batch_size or self.config.batch_size
        now = time.time() if now is None else now
        conn = get_social_db(self.db_path)
        claimed = []
        try:
            candidates = conn.execute(
                "SELECT id FROM job_queue WHERE status = 'pending' AND scheduled_for <= ? "
                "ORDER BY scheduled_for LIMIT ?",
                (now, batch_size)
            ).fetchall()
            for candidate in candidates:
                cur = conn.execute(
                    "UPDATE job_queue SET status='processing', attempts=attempts + 1, "
                    "last_attempt_at=?, updated_at=? "
                    "WHERE id=? AND status='pending' AND attempts < max_attempts",
                    (now, now, candidate['id'])
                )
                conn.commit()
                if cur.rowcount == 1:
                    claimed.append(candidate['id'])
            jobs = []
            for job_id in claimed:
                row = conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
                jobs.append(Job.from_row(row))
        finally:
            conn.close()

        for job in jobs:
            audit.record_event(
                self.db_path, 'publish.attempt', 'job', job.id,
                organization_id=job.organization_id,
                old_values={'status': JobStatus.PENDING.value},
                new_values={'status': JobStatus.PROCESSING.value, 'attempts': job.attempts},
            )
        return jobs

    def poll_and_process(self, batch_size=None, now=None):
        """Claim the due batch and process each job. Returns one result dict per job."""
        jobs = self.claim_due_jobs(batch_size, now=now)
        if not jobs:
            return []
        logger.info(f"Processing {len(jobs)} due job(s)")

        workers = max(1, min(self.config.dispatch_concurrency, len(jobs)))
        if workers == 1:
            return [self.process_job(job) for job in jobs]
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self.process_job, jobs))

    def process_job(self, job):
        """Run one claimed job to its next state. Never raises."""
        logger.info(f"Processing job {job.id} for {job.platform.value} (attempt {job.attempts}/{job.max_attempts})")
        post = get_post(self.db_path, job.post_id)
        account = get_account(self.db_path, job.social_account_id)
        if post is None or account is None:
            return self._fail(job, 'Post or social account no longer exists', FailureKind.VALIDATION)

        try:
            token, account = self.refresher.ensure_fresh_token(account)
        except TokenRefreshError as e:
            return self._fail(job, str(e), FailureKind.RECONNECT_REQUIRED)

        publisher = self.publishers.get(job.platform)
        if publisher is None:
            return self._fail(job, f'Unknown platform: {job.platform.value}', FailureKind.VALIDATION)

        try:
            content = content_for_platform(post, job.platform)
            ref = publisher.publish(token, account.external_account_id, content)
        except ValidationError as e:
            return self._fail(job, str(e), FailureKind.VALIDATION)
        except PublishError as e:
            return self._transient_failure(job, str(e))
        except Exception as e:
            logger.exception(f"Job {job.id}: unexpected error in {job.platform.value} publisher")
            return self._transient_failure(job, f'Publisher error: {e}')

        return self._complete(job, ref)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _complete(self, job, ref):
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            cur = conn.execute(
                "UPDATE job_queue SET status='completed', platform_post_id=?, platform_response=?, "
                "last_error=NULL, failure_kind=NULL, updated_at=? WHERE id=? AND status='processing'",
                (ref.platform_post_id, json.dumps(ref.raw_response, default=str), now, job.id)
            )
            if cur.rowcount != 1:
                conn.rollback()
                return self._claim_lost(job)
            audit.record_event(
                self.db_path, 'publish.result', 'job', job.id, organization_id=job.organization_id,
                old_values={'status': JobStatus.PROCESSING.value},
                new_values={'status': JobStatus.COMPLETED.value, 'platform_post_id': ref.platform_post_id},
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Job {job.id}: published to {job.platform.value} as {ref.platform_post_id}")
        self._rollup_post(job.post_id)
        return {
            'job_id': job.id,
            'platform': job.platform.value,
            'status': JobStatus.COMPLETED.value,
            'platform_post_id': ref.platform_post_id,
            'platform_url': ref.platform_url,
        }

    def _transient_failure(self, job, message):
        if job.attempts < job.max_attempts:
            delay = self.retry_policy.delay(job.attempts)
            now = time.time()
            conn = get_social_db(self.db_path)
            try:
                cur = conn.execute(
                    "UPDATE job_queue SET status='pending', scheduled_for=?, last_error=?, failure_kind=?, "
                    "updated_at=? WHERE id=? AND status='processing'",
                    (now + delay, message, FailureKind.TRANSIENT.value, now, job.id)
                )
                if cur.rowcount != 1:
                    conn.rollback()
                    return self._claim_lost(job)
                audit.record_event(
                    self.db_path, 'publish.result', 'job', job.id, organization_id=job.organization_id,
                    old_values={'status': JobStatus.PROCESSING.value},
                    new_values={'status': JobStatus.PENDING.value, 'error': message, 'retry_in': delay},
                    conn=conn,
                )
                conn.commit()
            finally:
                conn.close()
            logger.warning(f"Job {job.id}: attempt {job.attempts}/{job.max_attempts} failed, "
                           f"retrying in {delay}s: {message}")
            return {
                'job_id': job.id,
                'platform': job.platform.value,
                'status': JobStatus.PENDING.value,
                'error': message,
                'will_retry': True,
            }
        return self._fail(job, message, FailureKind.TRANSIENT)

    def _fail(self, job, message, kind):
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            cur = conn.execute(
                "UPDATE job_queue SET status='failed', last_error=?, failure_kind=?, updated_at=? "
                "WHERE id=? AND status='processing'",
                (message, kind.value, now, job.id)
            )
            if cur.rowcount != 1:
                conn.rollback()
                return self._claim_lost(job)
            audit.record_event(
                self.db_path, 'publish.result', 'job', job.id, organization_id=job.organization_id,
                old_values={'status': JobStatus.PROCESSING.value},
                new_values={'status': JobStatus.FAILED.value, 'error': message, 'failure_kind': kind.value},
                conn=conn,
            )
            conn.commit()
        finally:
            conn.close()
        logger.error(f"Job {job.id}: failed on {job.platform.value} ({kind.value}): {message}")
        audit.notify(
            self.db_path, job.organization_id, 'job_failed',
            f'Publishing to {job.platform.value} failed',
            message=message, resource_type='job', resource_id=job.id,
        )
        self._rollup_post(job.post_id)
        return {
            'job_id': job.id,
            'platform': job.platform.value,
            'status': JobStatus.FAILED.value,
            'error': message,
            'failure_kind': kind.value,
            'will_retry': False,
        }

    def _claim_lost(self, job):
        """The job left ``processing`` under us (e.g. requeued as stale); drop this outcome."""
        current = get_job(self.db_path, job.id)
        status = current.status.value if current else None
        logger.warning(f"Job {job.id}: no longer processing (now {status}); discarding this attempt's outcome")
        return {
            'job_id': job.id,
            'platform': job.platform.value,
            'status': status,
            'superseded': True,
        }

    def _rollup_post(self, post_id):
        """Mirror job outcomes onto the post once nothing is left in flight."""
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            post = conn.execute("SELECT status FROM posts WHERE id = ?", (post_id,)).fetchone()
            statuses = [r['status'] for r in conn.execute(
                "SELECT status FROM job_queue WHERE post_id = ?", (post_id,)).fetchall()]
            if post is None or not statuses:
                conn.rollback()
                return None

            new_status = None
            if all(s == JobStatus.COMPLETED.value for s in statuses):
                new_status = PostStatus.PUBLISHED
            elif (JobStatus.FAILED.value in statuses
                  and not any(s in (JobStatus.PENDING.value, JobStatus.PROCESSING.value) for s in statuses)):
                new_status = PostStatus.FAILED

            if new_status is None or post['status'] == new_status.value:
                conn.rollback()
                return None

            if new_status == PostStatus.PUBLISHED:
                conn.execute("UPDATE posts SET status='published', published_at=?, updated_at=? WHERE id=?",
                             (now, now, post_id))
            else:
                conn.execute("UPDATE posts SET status='failed', updated_at=? WHERE id=?", (now, post_id))
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Post {post_id}: {post['status']} -> {new_status.value}")
        return new_status

    # =========================================================================
    # OPERATOR ACTIONS AND MAINTENANCE
    # =========================================================================

    def retry_job(self, job_id, organization_id=None, user_id=None):
        """Put a failed job back in the queue without resetting its attempt count."""
        now = time.time()
        conn = get_social_db(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            job = Job.from_row(conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone())
            if job is None or (organization_id and job.organization_id != organization_id):
                raise NotFoundError('Job not found')
            if job.status != JobStatus.FAILED:
                raise ValidationError(f'Only failed jobs can be retried (job is {job.status.value})')
            if job.attempts >= job.max_attempts:
                raise ValidationError(f'Job has used all {job.max_attempts} attempts')
            if job.failure_kind == FailureKind.RECONNECT_REQUIRED:
                account = conn.execute("SELECT is_active FROM social_accounts WHERE id = ?",
                                       (job.social_account_id,)).fetchone()
                if account is None or not account['is_active']:
                    raise ValidationError('Reconnect the social account before retrying')

            conn.execute(
                "UPDATE job_queue SET status='pending', last_error=NULL, failure_kind=NULL, "
                "scheduled_for=?, updated_at=? WHERE id=? AND status='failed'",
                (now, now, job_id)
            )
            conn.execute(
                "UPDATE posts SET status='scheduled', updated_at=? WHERE id=? AND status='failed'",
                (now, job.post_id)
            )
            audit.record_event(
                self.db_path, 'job.retry', 'job', job_id, organization_id=job.organization_id,
                user_id=user_id,
                old_values={'status': JobStatus.FAILED.value, 'last_error': job.last_error},
                new_values={'status': JobStatus.PENDING.value, 'attempts': job.attempts},
                conn=conn,
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.info(f"Job {job_id} requeued by operator ({job.attempts}/{job.max_attempts} attempts used)")
        return get_job(self.db_path, job_id)

    def requeue_stale_jobs(self, stale_after=None, now=None):
        """Recover jobs left in ``processing`` by a crashed run.

        Jobs with attempts left go back to ``pending``; the rest fail.
        Returns the number of jobs touched.
        """
        stale_after = self.config.stale_after if stale_after is None else stale_after
        now = time.time() if now is None else now
        cutoff = now - stale_after
        conn = get_social_db(self.db_path)
        touched = []
        try:
            rows = conn.execute(
                "SELECT * FROM job_queue WHERE status = 'processing' AND last_attempt_at < ?",
                (cutoff,)
            ).fetchall()
            for row in rows:
                job = Job.from_row(row)
                message = f'Processing stalled for more than {int(stale_after)}s'
                if job.attempts < job.max_attempts:
                    cur = conn.execute(
                        "UPDATE job_queue SET status='pending', last_error=?, failure_kind=?, "
                        "scheduled_for=?, updated_at=? WHERE id=? AND status='processing' AND last_attempt_at < ?",
                        (message, FailureKind.TRANSIENT.value, now, now, job.id, cutoff)
                    )
                    new_status = JobStatus.PENDING
                else:
                    cur = conn.execute(
                        "UPDATE job_queue SET status='failed', last_error=?, failure_kind=?, "
                        "updated_at=? WHERE id=? AND status='processing' AND last_attempt_at < ?",
                        (message, FailureKind.TRANSIENT.value, now, job.id, cutoff)
                    )
                    new_status = JobStatus.FAILED
                if cur.rowcount == 1:
                    audit.record_event(
                        self.db_path, 'job.requeue_stale', 'job', job.id,
                        organization_id=job.organization_id,
                        old_values={'status': JobStatus.PROCESSING.value},
                        new_values={'status': new_status.value, 'error': message},
                        conn=conn,
                    )
                    touched.append(job)
                conn.commit()
        finally:
            conn.close()

        for job in touched:
            logger.warning(f"Job {job.id} was stuck in processing; requeued")
            self._rollup_post(job.post_id)
        return len(touched)

    def list_jobs(self, organization_id, status=None, post_id=None, limit=100):
        conn = get_social_db(self.db_path)
        try:
            sql = "SELECT * FROM job_queue WHERE organization_id = ?"
            params = [organization_id]
            if status:
                sql += " AND status = ?"
                params.append(JobStatus(status).value)
            if post_id:
                sql += " AND post_id = ?"
                params.append(post_id)
            sql += " ORDER BY scheduled_for DESC LIMIT ?"
            params.append(limit)
            return [Job.from_row(r) for r in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()
