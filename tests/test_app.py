import logging
import os
from urllib.parse import urlparse

import pytest

from app import create_app, MethodOverrideMiddleware
from config import (
    Config, TestingConfig, get_config, DevelopmentConfig, ProductionConfig, DEFAULT_SECRET_KEY
)
from tests.conftest import register, login


class CSRFConfig(TestingConfig):
    WTF_CSRF_ENABLED = True


class RateLimitedConfig(TestingConfig):
    RATELIMIT_ENABLED = True
    LOGIN_RATE_LIMIT = '2 per minute'


def test_home_redirects_by_session(client):
    response = client.get('/')
    assert urlparse(response.headers['Location']).path == '/login'

    register(client)
    response = client.get('/')
    assert urlparse(response.headers['Location']).path == '/tasks'


def test_health_check(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.get_json()['status'] == 'healthy'
    assert response.get_json()['database'] == 'connected'


def test_security_headers(client):
    response = client.get('/login')

    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'DENY'
    assert response.headers['Referrer-Policy'] == 'same-origin'


def test_unknown_page_renders_404(client):
    response = client.get('/does-not-exist')
    assert response.status_code == 404
    assert b'Not found' in response.data


def test_wrong_method_renders_405(client):
    response = client.get('/logout')
    assert response.status_code == 405
    assert b'Method not allowed' in response.data


def test_session_cookie_is_http_only(client):
    response = register(client)
    cookie = response.headers.get('Set-Cookie', '')
    assert 'HttpOnly' in cookie
    assert 'SameSite=Lax' in cookie


def test_csrf_token_is_required_when_enabled():
    app = create_app(CSRFConfig)
    client = app.test_client()

    response = client.post('/login', data={'email': 'a@x.com', 'password': 'secret1'})

    assert response.status_code == 400
    assert b'expired or is invalid' in response.data


def test_forms_carry_csrf_token():
    app = create_app(CSRFConfig)
    client = app.test_client()

    page = client.get('/register')
    assert b'name="csrf_token"' in page.data


def test_login_is_rate_limited():
    app = create_app(RateLimitedConfig)
    client = app.test_client()

    assert login(client, password='wrong').status_code == 401
    assert login(client, password='wrong').status_code == 401

    response = login(client, password='wrong')
    assert response.status_code == 429
    assert b'Too many requests' in response.data


class FakeApp:
    def __init__(self):
        self.method = None

    def __call__(self, environ, start_response):
        self.method = environ['REQUEST_METHOD']
        return []


@pytest.mark.parametrize('environ, expected', [
    ({'REQUEST_METHOD': 'POST', 'QUERY_STRING': '_method=PUT'}, 'PUT'),
    ({'REQUEST_METHOD': 'POST', 'QUERY_STRING': '_method=delete'}, 'DELETE'),
    ({'REQUEST_METHOD': 'POST', 'HTTP_X_HTTP_METHOD_OVERRIDE': 'PATCH'}, 'PATCH'),
    ({'REQUEST_METHOD': 'POST', 'QUERY_STRING': '_method=GET'}, 'POST'),
    ({'REQUEST_METHOD': 'GET', 'QUERY_STRING': '_method=DELETE'}, 'GET'),
    ({'REQUEST_METHOD': 'POST', 'QUERY_STRING': ''}, 'POST'),
])
def test_method_override_middleware(environ, expected):
    inner = FakeApp()
    MethodOverrideMiddleware(inner)(environ, lambda *args: None)
    assert inner.method == expected


def test_get_config_by_env(monkeypatch):
    monkeypatch.setenv('FLASK_ENV', 'production')
    assert get_config() is ProductionConfig

    monkeypatch.setenv('FLASK_ENV', 'testing')
    assert get_config() is TestingConfig

    monkeypatch.setenv('FLASK_ENV', 'unknown')
    assert get_config() is DevelopmentConfig


class StrongProductionConfig(ProductionConfig):
    SECRET_KEY = 'a-strong-production-secret'


def test_production_refuses_default_secret(monkeypatch):
    # FLASK_ENV 沒設,Config.ENV 是 development,但 ProductionConfig 本身還是要檢查
    monkeypatch.setattr(Config, 'ENV', 'development')
    monkeypatch.setenv('DATABASE_URL', 'sqlite://')

    class DefaultSecretConfig(ProductionConfig):
        SECRET_KEY = DEFAULT_SECRET_KEY

    with pytest.raises(ValueError, match='SECRET_KEY'):
        DefaultSecretConfig.validate()
    with pytest.raises(ValueError, match='SECRET_KEY'):
        create_app(DefaultSecretConfig)


def test_production_requires_database_url(monkeypatch):
    monkeypatch.delenv('DATABASE_URL', raising=False)

    with pytest.raises(ValueError, match='DATABASE_URL'):
        StrongProductionConfig.validate()


def test_testing_config_ignores_production_env(monkeypatch):
    monkeypatch.setattr(Config, 'ENV', 'production')
    monkeypatch.delenv('DATABASE_URL', raising=False)

    TestingConfig.validate()
    DevelopmentConfig.validate()


def test_rate_limit_storage_defaults_to_memory():
    assert Config.RATELIMIT_STORAGE_URI == os.getenv('REDIS_URL', 'memory://')
    assert ProductionConfig.RATELIMIT_STORAGE_URI == Config.RATELIMIT_STORAGE_URI


@pytest.mark.skipif('REDIS_URL' in os.environ, reason='REDIS_URL is set')
def test_production_app_starts_without_redis(monkeypatch, tmp_path):
    monkeypatch.setenv('DATABASE_URL', f'sqlite:///{tmp_path}/prod.db')

    class LocalProductionConfig(StrongProductionConfig):
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{tmp_path}/prod.db'
        SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}
        LOG_DIR = str(tmp_path / 'logs')

    loggers = [logging.getLogger(), logging.getLogger('app')]
    before = [list(logger.handlers) for logger in loggers]
    try:
        app = create_app(LocalProductionConfig)

        assert app.config['RATELIMIT_STORAGE_URI'] == 'memory://'
        response = app.test_client().get('/health')
        assert response.status_code == 200
        assert (tmp_path / 'logs' / 'app.log').exists()
    finally:
        for logger, handlers in zip(loggers, before):
            for handler in logger.handlers[:]:
                if handler not in handlers:
                    logger.removeHandler(handler)
                    handler.close()
