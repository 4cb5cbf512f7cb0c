from unittest.mock import MagicMock

import pytest

from storycraft import database
from storycraft.app import create_app
from storycraft.gemini import GeminiService
from storycraft.reference import ReferenceProcessor
from storycraft.youtube import YouTubeProcessingService


@pytest.fixture
def gemini():
    service = MagicMock(spec=GeminiService)
    service.is_available.return_value = True
    service.get_health_status.return_value = {'healthy': True, 'model': 'gemini-2.5-flash'}
    return service


@pytest.fixture
def youtube():
    return YouTubeProcessingService(api_key='')


@pytest.fixture
def app(tmp_path, gemini, youtube):
    app = create_app({
        'TESTING': True,
        'DATABASE_PATH': str(tmp_path / 'test.db'),
        'RATELIMIT_ENABLED': False,
        'LOG_DIR': str(tmp_path / 'logs'),
        'GEMINI_API_KEY': '',
        'YOUTUBE_API_KEY': '',
        'REDIS_URL': '',
        'SENTRY_DSN': '',
        'JWT_SECRET_KEY': 'test-secret',
        'FLASK_ENV': 'testing',
    })
    app.config['services'] = {
        'gemini': gemini,
        'youtube': youtube,
        'reference': ReferenceProcessor(gemini=gemini, youtube=youtube),
    }
    yield app
    database.close_connection()


@pytest.fixture
def client(app):
    return app.test_client()


def register(client, email='writer@example.com', password='correct-horse', name='Writer'):
    return client.post('/api/v1/auth/register', json={'email': email, 'password': password, 'name': name})


@pytest.fixture
def auth(client):
    """(user, headers) for a freshly registered account"""
    data = register(client).get_json()['data']
    return data['user'], {'Authorization': f"Bearer {data['access_token']}"}
