"""
Exception hierarchy for the Friendship session client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that every layer of the client (request gate,
refresh coordinator, credential storage, session controller) reports failures
the same way.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, TYPE_CHECKING
from enum import Enum

if TYPE_CHECKING:
    from .models import RequestDescriptor


class ErrorCode(Enum):
    """Standardized error codes for the Friendship session client."""

    # Authentication and session errors (1000-1099)
    AUTH_INVALID_TOKEN = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_REFRESH_FAILED = "AUTH_1003"
    AUTH_SESSION_EXPIRED = "AUTH_1004"
    AUTH_SESSION_TERMINATED = "AUTH_1005"
    AUTH_LOGIN_FAILED = "AUTH_1006"

    # Network and communication errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # Credential storage errors (3000-3099)
    STORAGE_READ_FAILED = "STORAGE_3001"
    STORAGE_WRITE_FAILED = "STORAGE_3002"
    STORAGE_CLEAR_FAILED = "STORAGE_3003"
    STORAGE_BACKEND_UNAVAILABLE = "STORAGE_3004"

    # Request validation errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_FORBIDDEN = "VALIDATION_4003"
    VALIDATION_NOT_FOUND = "VALIDATION_4004"
    VALIDATION_CONFLICT = "VALIDATION_4009"
    VALIDATION_RATE_LIMITED = "VALIDATION_4029"

    # Admission control errors (5000-5099)
    ADMISSION_LIMIT_REACHED = "ADMISSION_5001"

    # Server errors (6000-6099)
    SERVER_INTERNAL_ERROR = "SERVER_6001"
    SERVER_UNAVAILABLE = "SERVER_6002"

    # Configuration errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_MISSING_REQUIRED_SETTING = "CONFIG_8003"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECONNECT = "reconnect"
    REFRESH_TOKEN = "refresh_token"
    LOGIN_AGAIN = "login_again"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


class FriendshipClientError(Exception):
    """
    Base exception class for all Friendship client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }

    def get_http_status_code(self) -> int:
        """Get the HTTP status code this error corresponds to."""
        code_mapping = {
            ErrorCode.AUTH_INVALID_TOKEN: 401,
            ErrorCode.AUTH_TOKEN_EXPIRED: 401,
            ErrorCode.AUTH_REFRESH_FAILED: 401,
            ErrorCode.AUTH_SESSION_EXPIRED: 401,
            ErrorCode.AUTH_SESSION_TERMINATED: 401,
            ErrorCode.AUTH_LOGIN_FAILED: 401,

            ErrorCode.VALIDATION_INVALID_INPUT: 400,
            ErrorCode.VALIDATION_FORBIDDEN: 403,
            ErrorCode.VALIDATION_NOT_FOUND: 404,
            ErrorCode.VALIDATION_CONFLICT: 409,
            ErrorCode.VALIDATION_RATE_LIMITED: 429,

            ErrorCode.ADMISSION_LIMIT_REACHED: 429,

            ErrorCode.SERVER_UNAVAILABLE: 503,
            ErrorCode.NETWORK_TIMEOUT: 408,
        }

        return code_mapping.get(self.error_code, 500)


class NetworkError(FriendshipClientError):
    """Transport level failures: connection refused, DNS, timeouts."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT],
            **kwargs
        )


class ResponseError(FriendshipClientError):
    """
    Base class for errors produced by a non-successful HTTP response.

    Carries the status code, the server supplied detail and the descriptor of
    the request that produced it.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: ErrorCode,
        request: Optional['RequestDescriptor'] = None,
        detail: Any = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        context['status_code'] = status_code
        if request is not None:
            context['method'] = request.method
            context['path'] = request.path

        super().__init__(message=message, error_code=error_code, context=context, **kwargs)

        self.status_code = status_code
        self.request = request
        self.detail = detail

    def get_http_status_code(self) -> int:
        return self.status_code


class AuthenticationError(ResponseError):
    """
    The backend rejected the presented credential (HTTP 401).

    `access_token` is the credential the rejected request was sent with, or
    None if it was sent without one. It is kept out of `context` so that it
    never reaches logs or serialized errors.
    """

    def __init__(self, message: str, status_code: int = 401, access_token: Optional[str] = None, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.AUTH_INVALID_TOKEN)
        super().__init__(
            message=message,
            status_code=status_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.REFRESH_TOKEN, RecoveryAction.LOGIN_AGAIN],
            **kwargs
        )
        self.access_token = access_token


class ValidationError(ResponseError):
    """The backend rejected the request itself (4xx other than 401)."""

    _status_codes = {
        403: ErrorCode.VALIDATION_FORBIDDEN,
        404: ErrorCode.VALIDATION_NOT_FOUND,
        409: ErrorCode.VALIDATION_CONFLICT,
        429: ErrorCode.VALIDATION_RATE_LIMITED,
    }

    def __init__(self, message: str, status_code: int = 400, **kwargs):
        kwargs.setdefault(
            'error_code',
            self._status_codes.get(status_code, ErrorCode.VALIDATION_INVALID_INPUT)
        )
        super().__init__(
            message=message,
            status_code=status_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ServerError(ResponseError):
    """The backend failed to process the request (5xx)."""

    def __init__(self, message: str, status_code: int = 500, **kwargs):
        kwargs.setdefault(
            'error_code',
            ErrorCode.SERVER_UNAVAILABLE if status_code == 503 else ErrorCode.SERVER_INTERNAL_ERROR
        )
        super().__init__(
            message=message,
            status_code=status_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            **kwargs
        )


class RefreshFailure(FriendshipClientError):
    """Exchanging the refresh credential for a new pair did not succeed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('error_code', ErrorCode.AUTH_REFRESH_FAILED)
        super().__init__(
            message=message,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN_AGAIN],
            **kwargs
        )


class SessionExpiredError(FriendshipClientError):
    """The session can no longer be recovered and credentials were discarded."""

    def __init__(self, message: str = "Session expired, please log in again", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_SESSION_EXPIRED,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN_AGAIN],
            **kwargs
        )


class SessionTerminatedError(FriendshipClientError):
    """The session was ended by logout while the operation was pending."""

    def __init__(self, message: str = "Session was terminated by logout", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_SESSION_TERMINATED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class AdmissionControlError(FriendshipClientError):
    """Too many requests are in flight; the call was refused before dispatch."""

    def __init__(self, message: str, limit: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if limit is not None:
            context['limit'] = limit

        super().__init__(
            message=message,
            error_code=ErrorCode.ADMISSION_LIMIT_REACHED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            context=context,
            **kwargs
        )
        self.limit = limit


class StorageError(FriendshipClientError):
    """Credential storage backend failures."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(FriendshipClientError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION, RecoveryAction.CONTACT_ADMIN],
            context=context,
            **kwargs
        )


def create_error_response(error: FriendshipClientError) -> Dict[str, Any]:
    """
    Create a standardized error response dictionary from an exception.

    Args:
        error: The FriendshipClientError exception

    Returns:
        Standardized error response dictionary
    """
    return error.to_dict()


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> FriendshipClientError:
    """
    Convert a generic exception to a structured FriendshipClientError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured FriendshipClientError
    """
    if isinstance(exception, FriendshipClientError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        PermissionError: (ErrorCode.STORAGE_BACKEND_UNAVAILABLE, StorageError),
        FileNotFoundError: (ErrorCode.CONFIG_FILE_NOT_FOUND, ConfigurationError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, FriendshipClientError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
