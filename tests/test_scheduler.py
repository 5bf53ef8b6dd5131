from unittest.mock import MagicMock, patch

import pytest

from socialpub import scheduler


@pytest.fixture
def services(config):
    services = MagicMock()
    services.config = config
    return services


@pytest.fixture(autouse=True)
def reset_scheduler():
    yield
    scheduler.shutdown_scheduler()


def test_init_scheduler_registers_jobs(services):
    with patch.object(scheduler, 'BackgroundScheduler') as scheduler_cls:
        scheduler.init_scheduler(services)

    instance = scheduler_cls.return_value
    job_ids = [c.kwargs['id'] for c in instance.add_job.call_args_list]
    assert job_ids == ['dispatch_due_jobs', 'refresh_tokens', 'requeue_stale_jobs', 'purge_oauth_nonces']
    dispatch_call = instance.add_job.call_args_list[0]
    assert dispatch_call.kwargs['seconds'] == services.config.poll_interval
    assert dispatch_call.kwargs['max_instances'] == 1
    instance.start.assert_called_once()


def test_jobs_do_nothing_before_init():
    scheduler._dispatch_due_jobs()
    scheduler._refresh_expiring_tokens()


def test_dispatch_job_survives_errors(services):
    with patch.object(scheduler, 'BackgroundScheduler'):
        scheduler.init_scheduler(services)
    services.dispatcher.poll_and_process.side_effect = RuntimeError('database is locked')

    scheduler._dispatch_due_jobs()

    services.dispatcher.poll_and_process.assert_called_once_with()


def test_sweeps_call_through_to_services(services):
    with patch.object(scheduler, 'BackgroundScheduler'):
        scheduler.init_scheduler(services)
    services.dispatcher.requeue_stale_jobs.return_value = 2

    scheduler._requeue_stale_jobs()
    scheduler._refresh_expiring_tokens()

    services.dispatcher.requeue_stale_jobs.assert_called_once_with()
    services.refresher.refresh_expiring_tokens.assert_called_once_with()
