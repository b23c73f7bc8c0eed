import pytest

from app import create_app
from config import TestingConfig
from models import db


@pytest.fixture()
def app():
    app = create_app(TestingConfig)

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def ctx(app):
    """直接呼叫 service 函數時用 (不經過 request)"""
    with app.app_context():
        yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def runner(app):
    return app.test_cli_runner()


def register(client, name='Alice', email='a@x.com', password='secret1', confirmation=None):
    return client.post('/register', data={
        'name': name,
        'email': email,
        'password': password,
        'password_confirmation': password if confirmation is None else confirmation,
    })


def login(client, email='a@x.com', password='secret1', **extra):
    return client.post('/login', data={'email': email, 'password': password, **extra})


def logout(client):
    return client.post('/logout')


@pytest.fixture()
def alice(client):
    """已登入的 Alice"""
    register(client)
    return client


@pytest.fixture()
def bob(app):
    """另一個 client,登入成 Bob"""
    other = app.test_client()
    register(other, name='Bob', email='b@x.com', password='secret2')
    return other
