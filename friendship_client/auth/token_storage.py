"""
Secure credential storage for the Friendship session client.

This module provides the credential store used by the request gate, the
refresh coordinator and the session controller. Every store keeps an
in-memory copy of the pair that is swapped as a whole only after the durable
write succeeded, and runs blocking backends (system keyring, encrypted file)
in a worker thread.
"""

import os
import json
import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict, Tuple, Callable, Any
from pathlib import Path
import keyring
from keyring.errors import PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from friendship_shared.exceptions import StorageError, ConfigurationError, ErrorCode
from friendship_shared.interfaces import ICredentialStore
from friendship_shared.models import CredentialPair

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "friendship-client"
ACCESS_TOKEN_KEY = "auth_access_token"
REFRESH_TOKEN_KEY = "auth_refresh_token"
ENCRYPTION_KEY_NAME = "encryption_key"

StoredValues = Tuple[Optional[str], Optional[str]]


def check_keyring_availability(service_name: str = DEFAULT_SERVICE_NAME) -> bool:
    """Check if a working system keyring backend is available."""
    try:
        test_key = f"{service_name}_test"
        keyring.set_password(service_name, test_key, "test")
        result = keyring.get_password(service_name, test_key)
        keyring.delete_password(service_name, test_key)
        return result == "test"
    except Exception as e:
        logger.debug(f"Keyring not available: {e}")
        return False


def get_default_storage_path() -> Path:
    """Get path for encrypted file storage."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        config_dir = Path(xdg_config) / 'friendship'
    else:
        config_dir = Path.home() / '.config' / 'friendship'

    return config_dir / 'credentials.enc'


class CredentialStore(ICredentialStore):
    """
    Base class for credential stores.

    Subclasses implement the blocking `_read`, `_write` and `_delete`
    primitives; this class serializes them, caches the result and converts
    backend failures to StorageError.
    """

    def __init__(self):
        self._cache: Optional[CredentialPair] = None
        self._cache_loaded = False
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[CredentialPair]:
        """Return the cached pair without touching the backend."""
        return self._cache

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        return await asyncio.to_thread(func, *args)

    async def save(self, pair: CredentialPair) -> None:
        async with self._lock:
            try:
                await self._run(self._write, pair)
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"Failed to store credentials: {e}")
                raise StorageError(
                    f"Failed to store credentials: {e}",
                    error_code=ErrorCode.STORAGE_WRITE_FAILED,
                    cause=e
                )

            self._cache = pair
            self._cache_loaded = True

        logger.debug(f"Credentials stored by {type(self).__name__}")

    async def load(self) -> Optional[CredentialPair]:
        if self._cache_loaded:
            return self._cache

        async with self._lock:
            if self._cache_loaded:
                return self._cache

            try:
                access_token, refresh_token = await self._run(self._read)
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"Failed to read credentials: {e}")
                raise StorageError(
                    f"Failed to read credentials: {e}",
                    error_code=ErrorCode.STORAGE_READ_FAILED,
                    cause=e
                )

            if access_token and refresh_token:
                self._cache = CredentialPair(access_token, refresh_token)
            else:
                if access_token or refresh_token:
                    logger.warning("Ignoring partially stored credential pair")
                self._cache = None
            self._cache_loaded = True
            return self._cache

    async def clear(self) -> None:
        async with self._lock:
            try:
                await self._run(self._delete)
            except StorageError:
                raise
            except Exception as e:
                logger.error(f"Failed to clear credentials: {e}")
                raise StorageError(
                    f"Failed to clear credentials: {e}",
                    error_code=ErrorCode.STORAGE_CLEAR_FAILED,
                    cause=e
                )

            # the cache only forgets the pair once the backend has
            self._cache = None
            self._cache_loaded = True

        logger.debug(f"Credentials cleared by {type(self).__name__}")

    def _read(self) -> StoredValues:
        raise NotImplementedError

    def _write(self, pair: CredentialPair) -> None:
        raise NotImplementedError

    def _delete(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    """Process-local store; credentials are lost when the process exits."""

    def __init__(self, pair: Optional[CredentialPair] = None):
        super().__init__()
        self._values: Dict[str, str] = {}
        if pair is not None:
            self._write(pair)

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        return func(*args)

    def _read(self) -> StoredValues:
        return self._values.get(ACCESS_TOKEN_KEY), self._values.get(REFRESH_TOKEN_KEY)

    def _write(self, pair: CredentialPair) -> None:
        self._values[ACCESS_TOKEN_KEY] = pair.access_token
        self._values[REFRESH_TOKEN_KEY] = pair.refresh_token

    def _delete(self) -> None:
        self._values.clear()


class KeyringCredentialStore(CredentialStore):
    """Stores each credential as its own entry in the system keyring."""

    def __init__(self, service_name: str = DEFAULT_SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def _read(self) -> StoredValues:
        return (
            keyring.get_password(self.service_name, ACCESS_TOKEN_KEY),
            keyring.get_password(self.service_name, REFRESH_TOKEN_KEY)
        )

    def _write(self, pair: CredentialPair) -> None:
        try:
            keyring.set_password(self.service_name, REFRESH_TOKEN_KEY, pair.refresh_token)
            keyring.set_password(self.service_name, ACCESS_TOKEN_KEY, pair.access_token)
        except Exception:
            # never leave half a pair behind
            self._delete()
            raise

    def _delete(self) -> None:
        for key in (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY):
            try:
                keyring.delete_password(self.service_name, key)
            except PasswordDeleteError:
                pass


class EncryptedFileCredentialStore(CredentialStore):
    """
    Stores the pair in a single Fernet encrypted file.

    The encryption key is kept in the system keyring when one is available,
    otherwise in a key file next to the credentials, readable only by the
    owner.
    """

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        service_name: str = DEFAULT_SERVICE_NAME,
        use_keyring: Optional[bool] = None
    ):
        super().__init__()
        self.service_name = service_name
        self.storage_path = Path(storage_path) if storage_path else get_default_storage_path()
        self.key_path = self.storage_path.with_suffix('.key')
        if use_keyring is None:
            use_keyring = check_keyring_availability(service_name)
        self.use_keyring = use_keyring

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Encrypted credential file at {self.storage_path} (keyring key: {self.use_keyring})")

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.use_keyring:
            stored_key = keyring.get_password(self.service_name, ENCRYPTION_KEY_NAME)
            if stored_key:
                self._encryption_key = stored_key.encode()
                return self._encryption_key

            key = Fernet.generate_key()
            keyring.set_password(self.service_name, ENCRYPTION_KEY_NAME, key.decode())
        elif self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key
        else:
            key = Fernet.generate_key()
            self._write_private_file(self.key_path, key)

        self._encryption_key = key
        return key

    def _write_private_file(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + '.tmp')
        tmp_path.write_bytes(data)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)

    def _read(self) -> StoredValues:
        if not self.storage_path.exists():
            return None, None

        fernet = Fernet(self._get_encryption_key())
        try:
            data = json.loads(fernet.decrypt(self.storage_path.read_bytes()).decode())
        except InvalidToken as e:
            raise StorageError(
                f"Credential file {self.storage_path} cannot be decrypted",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )

        return data.get('access_token'), data.get('refresh_token')

    def _write(self, pair: CredentialPair) -> None:
        payload = dict(pair.to_dict(), stored_at=datetime.now().isoformat())
        fernet = Fernet(self._get_encryption_key())
        self._write_private_file(self.storage_path, fernet.encrypt(json.dumps(payload).encode()))

    def _delete(self) -> None:
        self.storage_path.unlink(missing_ok=True)


def create_credential_store(
    backend: str = "auto",
    service_name: str = DEFAULT_SERVICE_NAME,
    storage_path: Optional[str] = None
) -> CredentialStore:
    """
    Create the credential store for a backend name.

    Args:
        backend: One of 'auto', 'keyring', 'file' or 'memory'
        service_name: Keyring service name
        storage_path: Location of the encrypted file for the 'file' backend

    Returns:
        Configured credential store
    """
    backend = (backend or "auto").lower()

    if backend == "auto":
        backend = "keyring" if check_keyring_availability(service_name) else "file"
        logger.info(f"Selected '{backend}' credential storage")

    if backend == "memory":
        return MemoryCredentialStore()
    if backend == "keyring":
        return KeyringCredentialStore(service_name)
    if backend == "file":
        return EncryptedFileCredentialStore(
            Path(storage_path).expanduser() if storage_path else None,
            service_name
        )

    raise ConfigurationError(
        f"Unknown credential storage backend: {backend}",
        error_code=ErrorCode.CONFIG_INVALID_VALUE,
        config_key="storage.backend"
    )
