"""
Periodic driver for the job pipeline.

Uses APScheduler BackgroundScheduler running in-process: polls due jobs,
refreshes tokens nearing expiry, requeues jobs stuck in processing, and
purges expired OAuth state nonces. Deployments that prefer an external
cron call ``POST /api/cron/dispatch`` instead.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from socialpub.oauth_state import purge_expired_nonces

logger = logging.getLogger(__name__)

_scheduler = None
_services = None

TOKEN_REFRESH_INTERVAL_HOURS = 12
STALE_SWEEP_INTERVAL_MINUTES = 5
NONCE_PURGE_INTERVAL_HOURS = 24


def init_scheduler(services):
    """Start the background scheduler and return it."""
    global _scheduler, _services
    _services = services
    config = services.config

    _scheduler = BackgroundScheduler(daemon=True)
    _scheduler.add_job(_dispatch_due_jobs, 'interval', seconds=config.poll_interval,
                       id='dispatch_due_jobs', max_instances=1, coalesce=True,
                       misfire_grace_time=30)
    _scheduler.add_job(_refresh_expiring_tokens, 'interval', hours=TOKEN_REFRESH_INTERVAL_HOURS,
                       id='refresh_tokens', misfire_grace_time=300)
    _scheduler.add_job(_requeue_stale_jobs, 'interval', minutes=STALE_SWEEP_INTERVAL_MINUTES,
                       id='requeue_stale_jobs', misfire_grace_time=60)
    _scheduler.add_job(_purge_nonces, 'interval', hours=NONCE_PURGE_INTERVAL_HOURS,
                       id='purge_oauth_nonces', misfire_grace_time=3600)
    _scheduler.start()
    logger.info(f"Scheduler started (polling every {config.poll_interval}s)")
    return _scheduler


def shutdown_scheduler():
    """Shut down the scheduler gracefully."""
    global _scheduler, _services
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
    _services = None


def _dispatch_due_jobs():
    if not _services:
        return
    try:
        results = _services.dispatcher.poll_and_process()
        if results:
            done = sum(1 for r in results if r['status'] == 'completed')
            logger.info(f"Dispatch run: {done}/{len(results)} job(s) completed")
    except Exception:
        logger.exception("Dispatch run failed")


def _refresh_expiring_tokens():
    if not _services:
        return
    try:
        _services.refresher.refresh_expiring_tokens()
    except Exception:
        logger.exception("Token refresh sweep failed")


def _requeue_stale_jobs():
    if not _services:
        return
    try:
        count = _services.dispatcher.requeue_stale_jobs()
        if count:
            logger.warning(f"Requeued {count} stale job(s)")
    except Exception:
        logger.exception("Stale job sweep failed")


def _purge_nonces():
    if not _services:
        return
    try:
        purge_expired_nonces(_services.config.database_path)
    except Exception:
        logger.exception("OAuth nonce purge failed")
