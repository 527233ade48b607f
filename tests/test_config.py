"""
Tests for client configuration loading.
"""

import pytest

from friendship_client.auth.session_manager import create_session_controller
from friendship_client.auth.token_storage import MemoryCredentialStore
from friendship_client.config import ClientConfiguration
from friendship_shared.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('FRIENDSHIP_SERVER_URL', 'FRIENDSHIP_TIMEOUT', 'FRIENDSHIP_MAX_CONCURRENT_REQUESTS',
                 'FRIENDSHIP_REFRESH_SAFETY_MARGIN', 'FRIENDSHIP_REFRESH_MINIMUM_DELAY',
                 'FRIENDSHIP_STORAGE_BACKEND', 'FRIENDSHIP_STORAGE_PATH', 'FRIENDSHIP_LOG_LEVEL',
                 'FRIENDSHIP_LOG_FILE', 'FRIENDSHIP_LOG_FORMAT'):
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, text):
    path = tmp_path / 'client.conf'
    path.write_text(text)
    return str(path)


def test_defaults_when_file_is_missing(tmp_path):
    config = ClientConfiguration(str(tmp_path / 'missing.conf'))

    assert config.get_server_url() == 'http://localhost:8080/api'
    assert config.get_server_timeout() == 10.0
    assert config.get_max_concurrent_requests() == 50
    assert config.get_refresh_safety_margin() == 120.0
    assert config.get_refresh_minimum_delay() == 30.0
    assert config.get_refresh_path() == '/users/refresh'
    assert '/users/login' in config.get_public_endpoints()
    assert config.get_storage_backend() == 'auto'
    assert config.get_storage_path() is None
    assert config.get_log_level() == 'WARNING'


def test_values_from_file(tmp_path):
    path = write_config(tmp_path, """
[server]
url = https://friendship.example.com/api
timeout = 5

[auth]
max_concurrent_requests = 8
refresh_safety_margin = 60
public_endpoints = ["/users/login", "/health"]

[storage]
backend = memory

[logging]
level = debug
""")

    config = ClientConfiguration(path)

    assert config.get_server_url() == 'https://friendship.example.com/api'
    assert config.get_server_timeout() == 5.0
    assert config.get_max_concurrent_requests() == 8
    assert config.get_refresh_safety_margin() == 60.0
    assert config.get_public_endpoints() == ['/users/login', '/health']
    assert config.get_storage_backend() == 'memory'
    assert config.get_log_level() == 'DEBUG'


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = write_config(tmp_path, "[server]\nurl = http://from-file\n")
    monkeypatch.setenv('FRIENDSHIP_SERVER_URL', 'http://from-env')
    monkeypatch.setenv('FRIENDSHIP_MAX_CONCURRENT_REQUESTS', '12')
    monkeypatch.setenv('FRIENDSHIP_STORAGE_BACKEND', 'memory')

    config = ClientConfiguration(path)

    assert config.get_server_url() == 'http://from-env'
    assert config.get_max_concurrent_requests() == 12
    assert config.get_storage_backend() == 'memory'


def test_runtime_overrides_win(tmp_path):
    config = ClientConfiguration(str(tmp_path / 'missing.conf'))

    config.set_override('server_url', 'http://override')
    config.set_override('auth.max_concurrent_requests', 2)

    assert config.get_server_url() == 'http://override'
    assert config.get_max_concurrent_requests() == 2


def test_comma_separated_public_endpoints(tmp_path):
    path = write_config(tmp_path, "[auth]\npublic_endpoints = /users/login, /health\n")

    assert ClientConfiguration(path).get_public_endpoints() == ['/users/login', '/health']


def test_invalid_values_raise_configuration_error(tmp_path):
    path = write_config(tmp_path, """
[server]
timeout = soon

[auth]
max_concurrent_requests = 0
public_endpoints = {"login": "/users/login"}
""")
    config = ClientConfiguration(path)

    with pytest.raises(ConfigurationError) as timeout_error:
        config.get_server_timeout()
    assert timeout_error.value.context['config_key'] == 'server.timeout'

    with pytest.raises(ConfigurationError):
        config.get_max_concurrent_requests()

    with pytest.raises(ConfigurationError):
        config.get_public_endpoints()


def test_default_config_file_is_created(tmp_path, monkeypatch):
    monkeypatch.setenv('HOME', str(tmp_path))

    config = ClientConfiguration()

    created = tmp_path / '.friendship' / 'client.conf'
    assert config.get_config_file_path() == str(created)
    assert created.exists()
    assert config.get_storage_backend() == 'auto'


def test_reload_picks_up_changes(tmp_path):
    path = write_config(tmp_path, "[server]\ntimeout = 5\n")
    config = ClientConfiguration(path)

    (tmp_path / 'client.conf').write_text("[server]\ntimeout = 7\n")
    config.reload_configuration()

    assert config.get_server_timeout() == 7.0


@pytest.mark.asyncio
async def test_create_session_controller_from_configuration(tmp_path):
    path = write_config(tmp_path, """
[server]
url = http://backend.test/api

[auth]
max_concurrent_requests = 4
refresh_safety_margin = 90
refresh_minimum_delay = 10
""")
    store = MemoryCredentialStore()

    controller = create_session_controller(ClientConfiguration(path), credential_store=store)
    try:
        assert controller.credential_store is store
        assert controller.api_client.server_url == 'http://backend.test/api'
        assert controller.api_client.max_concurrent_requests == 4
        assert controller.scheduler.safety_margin == 90.0
        assert controller.scheduler.minimum_delay == 10.0
        assert controller.api_client.is_public_endpoint('/users/refresh')
    finally:
        await controller.shutdown()
