"""
Publishing job pipeline for social media accounts.

Provides a Flask Blueprint for connecting Facebook, Instagram, and LinkedIn
accounts through OAuth, composing posts, and delivering them through a
retrying job queue.
"""

from flask import Blueprint


def create_blueprint():
    return Blueprint('socialpub', __name__, url_prefix='/api')


class Services:
    """The pipeline's long-lived components, built once from a Config."""

    def __init__(self, config, session=None):
        from socialpub.dispatcher import JobDispatcher
        from socialpub.oauth import AccountConnector
        from socialpub.oauth_state import StateSigner
        from socialpub.posting import build_publishers
        from socialpub.refresh import TokenRefresher
        from socialpub.vault import TokenVault

        self.config = config
        self.vault = TokenVault(config.token_key)
        self.signer = StateSigner(config.state_secret, ttl=config.state_ttl)
        self.connector = AccountConnector(config, self.vault, self.signer, session=session)
        self.refresher = TokenRefresher(config, self.vault, session=session)
        self.dispatcher = JobDispatcher(config, self.refresher,
                                        publishers=build_publishers(config, session=session))


def init_socialpub(app, config, session=None):
    """Create tables, wire login and routes, register the blueprint. Returns the Services."""
    from socialpub.auth import init_login_manager
    from socialpub.commands import register_commands
    from socialpub.models import create_social_tables
    from socialpub.routes import register_routes

    services = Services(config, session=session)
    create_social_tables(config.database_path)
    init_login_manager(app, config.database_path)
    bp = create_blueprint()
    register_routes(bp, services)
    app.register_blueprint(bp)
    register_commands(app, services)
    app.extensions['socialpub'] = services
    return services
