import json
from unittest.mock import MagicMock

import pytest

from server import create_app
from socialpub.auth import User, get_organization_by_name
from socialpub.models import Platform, get_job
from socialpub.posting import PublishedRef
from socialpub.posts import create_post


@pytest.fixture
def app(config, session, db_path):
    return create_app(config, session=session)


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def test_init_db(runner, config):
    result = runner.invoke(args=['init-db'])
    assert result.exit_code == 0
    assert config.database_path in result.output


def test_create_user_creates_organization(runner, db_path):
    result = runner.invoke(args=['create-user', 'carol', '--organization', 'Beta', '--password', 's3cret',
                                 '--role', 'admin', '--email', 'Carol@Beta.io'])

    assert result.exit_code == 0, result.output
    assert 'Created organization Beta' in result.output
    user = User.get_by_login('carol@beta.io', db_path)
    assert user.is_admin
    assert user.organization_id == get_organization_by_name('Beta', db_path)
    assert user.check_password('s3cret')


def test_create_user_rejects_unknown_role(runner):
    result = runner.invoke(args=['create-user', 'dave', '--organization', 'Beta', '--password', 'x',
                                 '--role', 'owner'])
    assert result.exit_code != 0


def test_dispatch_processes_due_jobs(app, runner, db_path, org_id, make_account):
    make_account()
    publisher = MagicMock()
    publisher.publish.return_value = PublishedRef('fb_7', {'id': 'fb_7'})
    services = app.extensions['socialpub']
    services.dispatcher.publishers = {Platform.FACEBOOK: publisher}
    post = create_post(db_path, org_id, 'From the CLI', ['facebook'])
    jobs = services.dispatcher.enqueue_post(post.id)

    result = runner.invoke(args=['dispatch'])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert json.loads(lines[0])['platform_post_id'] == 'fb_7'
    assert lines[-1] == '1 job(s) processed'
    assert get_job(db_path, jobs[0].id).status.value == 'completed'


def test_retry_job_reports_errors(runner):
    result = runner.invoke(args=['retry-job', 'no-such-job'])
    assert result.exit_code == 1
    assert 'Job not found' in result.output


def test_refresh_tokens_with_nothing_expiring(runner):
    result = runner.invoke(args=['refresh-tokens'])
    assert result.exit_code == 0
    assert '0 refreshed, 0 failed' in result.output


def test_requeue_stale(runner):
    result = runner.invoke(args=['requeue-stale', '--stale-after', '60'])
    assert result.exit_code == 0
    assert '0 job(s) requeued' in result.output
