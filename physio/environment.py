import os
import logging
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'physio_sessions.db')


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {name}: {raw!r}")
        return default


class EnvironmentConfig:
    """Runtime settings read from the process environment (and .env)"""

    REQUIRED_VARS = ['GROQ_API_KEY']

    def __init__(self):
        self.groq_api_key = os.environ.get('GROQ_API_KEY') or None
        self.debug_mode = os.environ.get('DEBUG_MODE', '').lower() == 'true'
        self.database_path = os.environ.get('PHYSIO_DB_PATH', DEFAULT_DB_PATH)
        self.auto_init_db = os.environ.get('PHYSIO_AUTO_INIT_DB', 'true').lower() == 'true'
        self.chat_model = os.environ.get('GROQ_CHAT_MODEL', 'llama-3.3-70b-versatile')
        self.stt_model = os.environ.get('GROQ_STT_MODEL', 'whisper-large-v3-turbo')
        self.tts_model = os.environ.get('GROQ_TTS_MODEL', 'playai-tts')
        self.tts_voice = os.environ.get('GROQ_TTS_VOICE', 'Fritz-PlayAI')
        self.request_timeout = _env_float('GROQ_TIMEOUT', 30.0)
        self.boot_delay = _env_float('BOOT_DELAY', 1.0)

    def validate_environment(self) -> Tuple[bool, List[str]]:
        """
        Check for required environment variables.

        A missing GROQ_API_KEY is reported but not fatal: the assistant then
        runs in offline mode with fallback responses.

        Returns:
            Tuple[bool, List[str]]: validity flag and the missing variable names
        """
        missing_vars = [var for var in self.REQUIRED_VARS if not os.environ.get(var)]

        if missing_vars:
            logger.warning(f"Missing environment variables: {', '.join(missing_vars)}")
            logger.warning("AI features are disabled; check your .env file")
        else:
            logger.info(f'GROQ_API_KEY found - length: {len(self.groq_api_key)}')

        return not missing_vars, missing_vars
