"""
Core interfaces for the Friendship session client.

This module defines the abstract interfaces that storage adapters and
configuration providers must implement.
"""

from abc import ABC, abstractmethod
from typing import Optional, Any, List

from .models import CredentialPair


class ICredentialStore(ABC):
    """Interface for persisting the credential pair."""

    @abstractmethod
    async def save(self, pair: CredentialPair) -> None:
        """Persist both credentials, replacing any previous pair."""
        pass

    @abstractmethod
    async def load(self) -> Optional[CredentialPair]:
        """Return the stored pair, or None if either credential is missing."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove both credentials."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_server_url(self) -> str:
        """Get server URL."""
        pass

    @abstractmethod
    def get_public_endpoints(self) -> List[str]:
        """Get the paths that never carry credentials."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
