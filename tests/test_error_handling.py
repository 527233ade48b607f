"""
Tests for structured errors and logging.
"""

import json
import logging
import tempfile
from pathlib import Path

import pytest

from friendship_shared.exceptions import (
    FriendshipClientError, AuthenticationError, ValidationError, ServerError, NetworkError,
    RefreshFailure, SessionExpiredError, AdmissionControlError, StorageError, ConfigurationError,
    ErrorCode, RecoveryAction, create_error_response, handle_exception
)
from friendship_shared.logging_config import (
    AuditLogger, StructuredFormatter, DetailedFormatter, LogFormat, LogLevel,
    setup_logging, log_structured_error
)
from friendship_shared.models import RequestDescriptor


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    audit = logging.getLogger('audit')
    saved = (root.handlers[:], root.level, audit.handlers[:], audit.propagate)
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in audit.handlers[:]:
        audit.removeHandler(handler)
        handler.close()
    root.handlers[:], audit.handlers[:] = saved[0], saved[2]
    root.setLevel(saved[1])
    audit.propagate = saved[3]


def test_error_to_dict_includes_cause():
    cause = OSError("disk full")
    error = StorageError("Failed to store credentials", cause=cause)

    data = create_error_response(error)['error']

    assert data['code'] == ErrorCode.STORAGE_WRITE_FAILED.value
    assert data['severity'] == 'high'
    assert data['cause'] == {'type': 'OSError', 'message': 'disk full'}
    assert 'retry' in data['recovery_actions']


def test_response_errors_carry_request_context():
    request = RequestDescriptor('get', '/events/3')

    error = AuthenticationError("token is expired", request=request, detail='token is expired')

    assert error.status_code == 401
    assert error.request is request
    assert error.context['method'] == 'GET'
    assert error.context['path'] == '/events/3'
    assert RecoveryAction.REFRESH_TOKEN in error.recovery_actions


def test_http_status_codes():
    assert ValidationError("gone", status_code=404).get_http_status_code() == 404
    assert ValidationError("gone", status_code=404).error_code == ErrorCode.VALIDATION_NOT_FOUND
    assert ValidationError("bad", status_code=418).error_code == ErrorCode.VALIDATION_INVALID_INPUT
    assert ServerError("down", status_code=503).error_code == ErrorCode.SERVER_UNAVAILABLE
    assert ServerError("bug").error_code == ErrorCode.SERVER_INTERNAL_ERROR
    assert NetworkError("slow", error_code=ErrorCode.NETWORK_TIMEOUT).get_http_status_code() == 408
    assert RefreshFailure("no").get_http_status_code() == 401
    assert SessionExpiredError().get_http_status_code() == 401
    assert AdmissionControlError("busy", limit=5).context['limit'] == 5


def test_handle_exception_maps_builtin_errors():
    assert isinstance(handle_exception(ConnectionError("refused")), NetworkError)

    timeout = handle_exception(TimeoutError("slow"))
    assert timeout.error_code == ErrorCode.NETWORK_TIMEOUT

    assert isinstance(handle_exception(PermissionError("denied")), StorageError)
    assert isinstance(handle_exception(FileNotFoundError("client.conf")), ConfigurationError)

    unknown = handle_exception(KeyError("x"), context={'operation': 'status'})
    assert type(unknown) is FriendshipClientError
    assert unknown.error_code == ErrorCode.INTERNAL_UNEXPECTED_ERROR
    assert unknown.context['operation'] == 'status'

    original = RefreshFailure("no")
    assert handle_exception(original) is original


def test_structured_formatter_outputs_json():
    error = ConfigurationError("bad timeout", ErrorCode.CONFIG_INVALID_VALUE, config_key='server.timeout')
    record = logging.LogRecord('friendship_client', logging.ERROR, __file__, 10, "bad timeout", None, None)
    record.error_info = error
    record.request_id = 'abc'

    entry = json.loads(StructuredFormatter().format(record))

    assert entry['level'] == 'ERROR'
    assert entry['message'] == 'bad timeout'
    assert entry['error']['code'] == ErrorCode.CONFIG_INVALID_VALUE.value
    assert entry['error']['context']['config_key'] == 'server.timeout'
    assert entry['extra'] == {'request_id': 'abc'}


def test_detailed_formatter_appends_error_details():
    record = logging.LogRecord('friendship_client', logging.ERROR, __file__, 10, "refresh", None, None)
    record.error_info = RefreshFailure("refresh rejected")

    formatted = DetailedFormatter().format(record)

    assert "Error Code: AUTH_1003" in formatted
    assert "Recovery Actions: login_again" in formatted


def test_audit_logger_never_records_tokens(caplog):
    audit = AuditLogger()

    with caplog.at_level(logging.INFO, logger='audit'):
        audit.log_token_refresh(trigger='reactive', result='success', subject='42', replayed=3)
        audit.log_session_event('logout', subject='42')

    refresh_record, logout_record = caplog.records[-2:]
    assert refresh_record.audit_info['event_type'] == 'token_refresh'
    assert refresh_record.audit_info['context'] == {'trigger': 'reactive', 'replayed': 3}
    assert logout_record.audit_info['result'] == 'logout'
    assert logout_record.audit_info['subject'] == '42'


def test_log_structured_error(caplog):
    logger = logging.getLogger('friendship_client.test')

    with caplog.at_level(logging.WARNING, logger='friendship_client.test'):
        log_structured_error(logger, StorageError("keyring locked"), level=logging.WARNING)

    assert caplog.records[-1].error_info.message == "keyring locked"


def test_setup_logging_writes_files(restore_logging):
    with tempfile.TemporaryDirectory() as temp_dir:
        log_file = Path(temp_dir) / 'logs' / 'client.log'
        audit_file = Path(temp_dir) / 'logs' / 'audit.log'

        loggers = setup_logging(
            log_level=LogLevel.DEBUG,
            log_format=LogFormat.JSON,
            log_file=str(log_file),
            enable_console=False,
            audit_file=str(audit_file)
        )

        logging.getLogger('friendship_client.auth').debug("refresh scheduled")
        AuditLogger().log_session_event('login', subject='42')
        for handler in loggers['root'].handlers + loggers['audit'].handlers:
            handler.flush()

        main_entry = json.loads(log_file.read_text().splitlines()[0])
        audit_entry = json.loads(audit_file.read_text().splitlines()[0])

        assert main_entry['message'] == "refresh scheduled"
        assert audit_entry['audit']['result'] == 'login'
        # audit events stay out of the main log
        assert 'Session login' not in log_file.read_text()

        for handler in loggers['root'].handlers + loggers['audit'].handlers:
            handler.close()


def test_setup_logging_without_audit_propagates(restore_logging):
    loggers = setup_logging(enable_console=False, enable_audit=False)

    assert 'audit' not in loggers
    assert logging.getLogger('audit').propagate is True
