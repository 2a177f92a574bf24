import os
import logging
import secrets
import threading

# Load environment variables first
from dotenv import load_dotenv
load_dotenv()

from flask import Flask, request

from physio.environment import EnvironmentConfig
from physio.database import SQLiteSessionStore, init_db
from physio.error_handlers import register_error_handlers
from physio.groq_integration import ResponseGenerator

logger = logging.getLogger(__name__)


def configure_logging(debug=False, log_file='app.log'):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )


def create_app(config=None):
    """
    Application factory for the Fit4Life intake API

    Args:
        config (dict): Overrides for the settings read from the environment

    Returns:
        Flask: configured application
    """
    env = EnvironmentConfig()

    app = Flask(__name__)
    app.secret_key = secrets.token_urlsafe(24)
    app.config.update(
        DEBUG=env.debug_mode,
        DATABASE_PATH=env.database_path,
        AUTO_INIT_DB=env.auto_init_db,
        GROQ_API_KEY=env.groq_api_key,
        GROQ_CHAT_MODEL=env.chat_model,
        GROQ_STT_MODEL=env.stt_model,
        GROQ_TTS_MODEL=env.tts_model,
        GROQ_TTS_VOICE=env.tts_voice,
        GROQ_TIMEOUT=env.request_timeout,
        BOOT_DELAY=env.boot_delay,
    )
    if config:
        app.config.update(config)

    if app.config['AUTO_INIT_DB']:
        init_db(app.config['DATABASE_PATH'])

    # Availability is decided once, here, from the configured key
    generator = ResponseGenerator.from_environment(
        api_key=app.config['GROQ_API_KEY'] or '',
        model=app.config['GROQ_CHAT_MODEL'],
        timeout=app.config['GROQ_TIMEOUT'],
    )

    app.extensions['physio'] = {
        'store': SQLiteSessionStore(app.config['DATABASE_PATH']),
        'generator': generator,
        'flows': {},
        'lock': threading.Lock(),
    }

    @app.before_request
    def log_request_info():
        logger.debug('Request: %s %s', request.method, request.path)
        if app.config['DEBUG'] and not request.path.endswith('/voice'):
            logger.debug('Body: %s', request.get_data())

    register_error_handlers(app)

    from blueprints.api_routes import api_bp
    app.register_blueprint(api_bp, url_prefix='/api')

    logger.info(f"Fit4Life API created (provider available: {generator.is_available()})")
    return app


if __name__ == '__main__':
    configure_logging(debug=os.environ.get('DEBUG_MODE', '').lower() == 'true')
    app = create_app()
    port = int(os.environ.get('PORT', 5000))
    logger.info('Starting Flask app on %s:%d', '0.0.0.0', port)
    app.run(host='0.0.0.0', port=port, debug=app.config['DEBUG'], threaded=True)
