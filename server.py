# Social publishing service
# OAuth account connection, post scheduling, and retrying delivery to
# Facebook, Instagram, and LinkedIn.

import atexit
import logging
import os

from flask import Flask, jsonify

from socialpub import init_socialpub
from socialpub.config import Config
from socialpub.scheduler import init_scheduler, shutdown_scheduler

SERVER_PORT = int(os.environ.get('PORT', os.environ.get('SERVER_PORT', 8189)))
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

logger = logging.getLogger('socialpub.server')


def configure_logging(level=LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def create_app(config=None, start_scheduler=False, session=None):
    """Build the Flask app. ``flask --app server`` finds this factory."""
    config = config or Config.from_env()
    app = Flask(__name__)
    app.secret_key = config.secret_key
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    services = init_socialpub(app, config, session=session)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    if start_scheduler and config.scheduler_enabled:
        init_scheduler(services)
        atexit.register(shutdown_scheduler)
    return app


if __name__ == '__main__':
    configure_logging()
    app = create_app(start_scheduler=True)
    logger.info(f"Listening on http://0.0.0.0:{SERVER_PORT}/api/")
    app.run(host='0.0.0.0', port=SERVER_PORT, debug=False, threaded=True)
