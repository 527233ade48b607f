"""
HTTP API client for the Friendship backend.

This module is the request gate every backend call goes through: it decides
whether a path is public, attaches the current bearer credential to protected
calls, enforces the concurrent request ceiling and maps responses to the
structured exception hierarchy. Authentication failures on protected calls
are handed to the refresh coordinator, which refreshes once and replays.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, Iterable, TYPE_CHECKING
import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from friendship_shared.exceptions import (
    FriendshipClientError, AuthenticationError, ValidationError, ServerError,
    NetworkError, RefreshFailure, AdmissionControlError, StorageError, ErrorCode
)
from friendship_shared.interfaces import ICredentialStore
from friendship_shared.models import CredentialPair, RequestDescriptor

if TYPE_CHECKING:
    from friendship_client.auth.refresh_coordinator import RefreshCoordinator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_CONCURRENT_REQUESTS = 50
DEFAULT_REFRESH_PATH = '/users/refresh'
DEFAULT_LOGIN_PATH = '/users/login'
DEFAULT_PUBLIC_ENDPOINTS = (
    '/sessions/register',
    '/sessions/verify',
    '/users/login',
    '/users/refresh',
    '/users/request-reset',
    '/users/confirm-reset',
    '/users',
)


def normalize_path(path: str) -> str:
    """Strip query string and trailing slash, and ensure a leading slash."""
    path = path.split('?', 1)[0].split('#', 1)[0].strip()
    path = '/' + path.strip('/')
    return path


class FriendshipAPIClient:
    """
    HTTP client for the Friendship REST backend.

    Protected calls carry `Authorization: Bearer <access token>` loaded from
    the credential store. At most `max_concurrent_requests` calls may be in
    flight; the refresh exchange itself is never counted against that limit.
    """

    def __init__(
        self,
        server_url: str,
        credential_store: ICredentialStore,
        timeout: float = DEFAULT_TIMEOUT,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
        public_endpoints: Optional[Iterable[str]] = None,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        login_path: str = DEFAULT_LOGIN_PATH
    ):
        if max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")

        self.server_url = server_url.rstrip('/')
        self.credential_store = credential_store
        self.timeout = ClientTimeout(total=timeout)
        self.max_concurrent_requests = max_concurrent_requests
        self.refresh_path = normalize_path(refresh_path)
        self.login_path = normalize_path(login_path)

        endpoints = DEFAULT_PUBLIC_ENDPOINTS if public_endpoints is None else public_endpoints
        self.public_endpoints = frozenset(normalize_path(p) for p in endpoints)
        self.public_endpoints |= {self.refresh_path, self.login_path}

        self._session: Optional[ClientSession] = None
        self._coordinator: Optional['RefreshCoordinator'] = None
        self._pending_requests = 0

        logger.info(f"API client initialized for server: {server_url}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.max_concurrent_requests + 1,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'FriendshipClient/1.0',
                    'Accept': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def set_refresh_coordinator(self, coordinator: Optional['RefreshCoordinator']) -> None:
        """Install the coordinator that recovers from authentication failures."""
        self._coordinator = coordinator

    @property
    def pending_requests(self) -> int:
        """Number of dispatched calls that have not settled yet."""
        return self._pending_requests

    def is_public_endpoint(self, path: str) -> bool:
        return normalize_path(path) in self.public_endpoints

    async def request(
        self,
        method: str,
        path: str,
        data: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """
        Issue a request through the gate.

        Args:
            method: HTTP method
            path: Endpoint path relative to the server URL
            data: JSON body
            params: Query parameters
            headers: Extra headers; any Authorization header is replaced

        Returns:
            Parsed JSON body, `{}` for an empty body, or the raw text

        Raises:
            AdmissionControlError: too many requests in flight
            AuthenticationError: credential rejected and not recoverable
            ValidationError: other 4xx response
            ServerError: 5xx response
            NetworkError: transport failure or timeout
            SessionTerminatedError: logout happened while waiting for a refresh
        """
        descriptor = RequestDescriptor(
            method=method, path=path, data=data, params=params, headers=headers or {}
        )
        return await self._send(descriptor)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request('GET', path, params=params, **kwargs)

    async def post(self, path: str, data: Any = None, **kwargs) -> Any:
        return await self.request('POST', path, data=data, **kwargs)

    async def put(self, path: str, data: Any = None, **kwargs) -> Any:
        return await self.request('PUT', path, data=data, **kwargs)

    async def patch(self, path: str, data: Any = None, **kwargs) -> Any:
        return await self.request('PATCH', path, data=data, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.request('DELETE', path, **kwargs)

    async def _send(self, descriptor: RequestDescriptor) -> Any:
        """Dispatch a descriptor, recovering once from an authentication failure."""
        try:
            return await self._dispatch(descriptor)
        except AuthenticationError as error:
            if self._coordinator is None or self.is_public_endpoint(descriptor.path):
                raise

            if descriptor.retried:
                logger.warning(
                    f"{descriptor.method} {descriptor.path} rejected again after refresh, abandoning session"
                )
                await self._coordinator.abandon(error)
                raise

            return await self._coordinator.recover(descriptor.mark_retried(), error, self._send)

    async def _dispatch(self, descriptor: RequestDescriptor) -> Any:
        if self._pending_requests >= self.max_concurrent_requests:
            logger.warning(
                f"Refusing {descriptor.method} {descriptor.path}: "
                f"{self._pending_requests} requests already in flight"
            )
            raise AdmissionControlError(
                f"Too many concurrent requests (limit {self.max_concurrent_requests})",
                limit=self.max_concurrent_requests
            )

        self._pending_requests += 1
        try:
            headers = dict(descriptor.headers)
            access_token = None
            if not self.is_public_endpoint(descriptor.path):
                access_token = await self._get_access_token()
                if access_token:
                    headers['Authorization'] = f'Bearer {access_token}'
            return await self._transmit(descriptor, headers, access_token)
        finally:
            self._pending_requests -= 1

    async def _get_access_token(self) -> Optional[str]:
        """Get the current access credential, if any."""
        try:
            pair = await self.credential_store.load()
        except StorageError as e:
            logger.warning(f"Sending request without credentials: {e}")
            return None

        return pair.access_token if pair else None

    async def _transmit(
        self,
        descriptor: RequestDescriptor,
        headers: Dict[str, str],
        access_token: Optional[str] = None
    ) -> Any:
        """
        Perform one HTTP exchange and map the outcome.

        This is not counted against the concurrency ceiling; `_dispatch` does
        the accounting for gated calls.

        Args:
            descriptor: Request to send
            headers: Headers to send, including any Authorization header
            access_token: Credential attached to the request, recorded on an
                AuthenticationError so recovery can tell whether it is stale
        """
        await self._ensure_session()

        url = f"{self.server_url}/{descriptor.path.lstrip('/')}"
        logger.debug(f"Making {descriptor.method} request to {url}")

        try:
            async with self._session.request(
                method=descriptor.method,
                url=url,
                json=descriptor.data,
                params=descriptor.params,
                headers=headers
            ) as response:
                if 200 <= response.status < 300:
                    return await self._read_body(response)

                error_data = await self._get_error_response(response)
                raise self._error_for_status(response.status, descriptor, error_data, access_token)

        except asyncio.TimeoutError as e:
            logger.warning(f"{descriptor.method} {descriptor.path} timed out")
            raise NetworkError(
                f"Request timed out: {descriptor.method} {descriptor.path}",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                cause=e
            )
        except (ClientError, OSError) as e:
            logger.warning(f"Network error on {descriptor.method} {descriptor.path}: {e}")
            raise NetworkError(f"Network request failed: {e}", cause=e)

    def _error_for_status(
        self,
        status: int,
        descriptor: RequestDescriptor,
        error_data: Dict[str, Any],
        access_token: Optional[str] = None
    ) -> FriendshipClientError:
        detail = (
            error_data.get('detail') or error_data.get('error') or error_data.get('message')
        )

        if status == 401:
            return AuthenticationError(
                f"Authentication failed: {detail or 'Unauthorized'}",
                request=descriptor,
                detail=detail,
                access_token=access_token
            )
        if status >= 500:
            return ServerError(
                f"Server error ({status}): {detail or 'Internal server error'}",
                status_code=status,
                request=descriptor,
                detail=detail
            )
        return ValidationError(
            f"Request failed ({status}): {detail or 'Request rejected'}",
            status_code=status,
            request=descriptor,
            detail=detail
        )

    async def _read_body(self, response) -> Any:
        text = await response.text()
        if not text:
            return {}
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _get_error_response(self, response) -> Dict[str, Any]:
        """Extract error information from response."""
        text = await response.text()
        try:
            data = json.loads(text)
        except ValueError:
            return {"detail": text or None}
        return data if isinstance(data, dict) else {"detail": data}

    async def login(self, email: str, password: str) -> CredentialPair:
        """
        Exchange user credentials for a credential pair.

        The pair is returned, not stored; the session controller adopts it.
        """
        logger.info("Logging in")
        response = await self.post(self.login_path, {'email': email, 'password': password})

        try:
            return CredentialPair.from_response(response)
        except ValueError as e:
            raise FriendshipClientError(
                "Login response did not contain a credential pair",
                error_code=ErrorCode.AUTH_LOGIN_FAILED,
                cause=e
            )

    async def exchange_refresh_token(self, refresh_token: str) -> CredentialPair:
        """
        Exchange the refresh credential for a new pair.

        Bypasses the gate: never admission-controlled, never recovered.

        Raises:
            RefreshFailure: on any network error, non-2xx status or malformed body
        """
        descriptor = RequestDescriptor(
            method='POST', path=self.refresh_path, data={'refresh_token': refresh_token}
        )

        try:
            response = await self._transmit(descriptor, {})
        except FriendshipClientError as e:
            raise RefreshFailure(f"Credential refresh failed: {e.message}", cause=e)

        try:
            return CredentialPair.from_response(response)
        except ValueError as e:
            raise RefreshFailure("Credential refresh returned a malformed response", cause=e)
