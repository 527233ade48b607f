"""
Core data models for the Friendship session client.

This module defines the credential pair, decoded token claims, the immutable
request descriptor used to replay requests after a refresh, and the state
enumerations shared by the authentication components.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum


class RefreshState(Enum):
    """State of the refresh coordinator."""
    IDLE = "idle"
    REFRESHING = "refreshing"


class RefreshTrigger(Enum):
    """What caused a credential refresh."""
    REACTIVE = "reactive"
    PROACTIVE = "proactive"
    FORCED = "forced"
    BOOTSTRAP = "bootstrap"


class SessionState(Enum):
    """Authentication state of the session controller."""
    LOGGED_OUT = "logged_out"
    LOGGED_IN = "logged_in"


@dataclass(frozen=True)
class CredentialPair:
    """The short-lived access credential and the long-lived refresh credential."""
    access_token: str
    refresh_token: str

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")

    @classmethod
    def from_response(cls, data: Any) -> 'CredentialPair':
        """
        Build a pair from a backend response body.

        Raises:
            ValueError: if the body does not contain both tokens
        """
        if not isinstance(data, dict):
            raise ValueError("Credential response must be a JSON object")

        access_token = data.get('access_token')
        refresh_token = data.get('refresh_token')
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            raise ValueError("Credential response is missing access_token or refresh_token")

        return cls(access_token=access_token, refresh_token=refresh_token)

    def to_dict(self) -> Dict[str, str]:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token
        }

    def __repr__(self) -> str:
        return (f"CredentialPair(access_token='{self.access_token[:8]}...', "
                f"refresh_token='{self.refresh_token[:8]}...')")


@dataclass(frozen=True)
class Claims:
    """Claims decoded from an access token payload."""
    subject: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.expires_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """A token without an expiry claim is reported as not expired."""
        remaining = self.seconds_until_expiry(now)
        return remaining is not None and remaining <= 0


@dataclass(frozen=True)
class RequestDescriptor:
    """
    Everything needed to reissue a request.

    The Authorization header is never part of the descriptor; the request gate
    attaches the current credential on every dispatch so that a replay after a
    refresh carries the new access token.
    """
    method: str
    path: str
    data: Any = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    retried: bool = False

    def __post_init__(self):
        if not self.method:
            raise ValueError("Request method cannot be empty")
        if not self.path:
            raise ValueError("Request path cannot be empty")

        object.__setattr__(self, 'method', self.method.upper())
        object.__setattr__(self, 'headers', {
            name: value for name, value in (self.headers or {}).items()
            if name.lower() != 'authorization'
        })

    def mark_retried(self) -> 'RequestDescriptor':
        """Return a copy flagged as already retried once."""
        return replace(self, retried=True)
