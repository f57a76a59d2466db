import pytest

from app import create_app
from config import TestingConfig
from seed import register_and_login


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(client):
    return register_and_login(client)


@pytest.fixture
def other_headers(client):
    return register_and_login(client, email='editor@example.com', username='editor')
