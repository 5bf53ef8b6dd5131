"""Operator commands, registered on the Flask app's ``flask`` CLI."""

import json
import logging

import click

from socialpub.auth import User, create_organization, get_organization_by_name
from socialpub.errors import SocialPubError
from socialpub.models import create_social_tables

logger = logging.getLogger(__name__)


def register_commands(app, services):
    config = services.config

    @app.cli.command('init-db')
    def init_db():
        """Create the database tables."""
        create_social_tables(config.database_path)
        click.echo(f'Database ready at {config.database_path}')

    @app.cli.command('create-user')
    @click.argument('username')
    @click.option('--organization', required=True, help='Organization name; created if missing.')
    @click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option('--display-name', default=None)
    @click.option('--email', default=None)
    @click.option('--role', type=click.Choice(User.VALID_ROLES), default='member')
    def create_user(username, organization, password, display_name, email, role):
        """Create a user, and its organization if needed."""
        org_id = get_organization_by_name(organization, config.database_path)
        if org_id is None:
            org_id = create_organization(organization, config.database_path)
            click.echo(f'Created organization {organization} ({org_id})')
        user = User.create(org_id, username, password, display_name or username, role,
                           config.database_path, email=email)
        click.echo(f'Created {role} {user.username} ({user.id})')

    @app.cli.command('dispatch')
    @click.option('--batch-size', type=int, default=None)
    def dispatch(batch_size):
        """Process one batch of due jobs."""
        results = services.dispatcher.poll_and_process(batch_size)
        for result in results:
            click.echo(json.dumps(result))
        click.echo(f'{len(results)} job(s) processed')

    @app.cli.command('retry-job')
    @click.argument('job_id')
    def retry_job(job_id):
        """Requeue a failed job that still has attempts left."""
        try:
            job = services.dispatcher.retry_job(job_id)
        except SocialPubError as e:
            raise click.ClickException(str(e))
        click.echo(f'Job {job.id} requeued ({job.attempts}/{job.max_attempts} attempts used)')

    @app.cli.command('refresh-tokens')
    @click.option('--within', type=float, default=None, help='Seconds ahead of expiry to refresh.')
    def refresh_tokens(within):
        """Refresh every token expiring inside the window."""
        refreshed, failed = services.refresher.refresh_expiring_tokens(within=within)
        click.echo(f'{refreshed} refreshed, {failed} failed')

    @app.cli.command('requeue-stale')
    @click.option('--stale-after', type=float, default=None, help='Seconds a job may stay processing.')
    def requeue_stale(stale_after):
        """Recover jobs stuck in processing."""
        count = services.dispatcher.requeue_stale_jobs(stale_after)
        click.echo(f'{count} job(s) requeued')
