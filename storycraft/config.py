"""
Environment-driven configuration for the StoryCraft API
"""

import os
from pathlib import Path

from dotenv import load_dotenv

_root_dir = Path(__file__).resolve().parent.parent
_env_path = _root_dir / '.env'
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()

API_VERSION = 'v1'
APP_VERSION = '1.0.0'


class Config:
    """Defaults read once from the environment; create_app() accepts overrides"""

    GEMINI_API_KEY = os.getenv('GEMINI_API_KEY', '')
    GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-2.5-flash')
    YOUTUBE_API_KEY = os.getenv('YOUTUBE_API_KEY', '')

    REDIS_URL = os.getenv('REDIS_URL', '')
    DATABASE_PATH = os.getenv('DATABASE_PATH', str(_root_dir / 'data' / 'storycraft.db'))

    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'dev-secret-change-me')
    JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
    JWT_ACCESS_TOKEN_EXPIRES = int(os.getenv('JWT_ACCESS_TOKEN_EXPIRES', '3600'))

    CORS_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000').split(',')
    RATE_LIMIT_DEFAULT = os.getenv('RATE_LIMIT_DEFAULT', '200 per minute')
    RATE_LIMIT_PROCESSING = os.getenv('RATE_LIMIT_PROCESSING', '10 per minute')

    SENTRY_DSN = os.getenv('SENTRY_DSN', '')
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    FLASK_ENV = os.getenv('FLASK_ENV', 'production')

    MAX_CONTENT_LENGTH = 1 * 1024 * 1024

    @classmethod
    def as_dict(cls) -> dict:
        return {key: getattr(cls, key) for key in dir(cls) if key.isupper()}
