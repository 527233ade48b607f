"""
Session Controller for the Friendship session client.

This module ties the credential store, the request gate, the refresh
coordinator and the refresh scheduler together, and exposes the session
lifecycle to the application: bootstrap at startup, login, logout and
forced refresh.
"""

import logging
from typing import Optional, Callable, List

from friendship_client.api_client import FriendshipAPIClient
from friendship_client.auth.claims import decode_claims
from friendship_client.auth.refresh_coordinator import RefreshCoordinator
from friendship_client.auth.refresh_scheduler import RefreshScheduler
from friendship_client.auth.token_storage import CredentialStore, create_credential_store
from friendship_shared.exceptions import (
    RefreshFailure, SessionExpiredError, SessionTerminatedError, StorageError
)
from friendship_shared.interfaces import ICredentialStore
from friendship_shared.logging_config import AuditLogger
from friendship_shared.models import CredentialPair, RefreshTrigger, SessionState

logger = logging.getLogger(__name__)


class SessionController:
    """
    Manages the authentication session.

    Listens to the coordinator: every successful refresh re-arms the
    scheduler with the new access token, and an unrecoverable refresh
    failure logs the session out.
    """

    def __init__(
        self,
        api_client: FriendshipAPIClient,
        credential_store: ICredentialStore,
        coordinator: RefreshCoordinator,
        scheduler: RefreshScheduler,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.api_client = api_client
        self.credential_store = credential_store
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.audit_logger = audit_logger or AuditLogger()

        self._state = SessionState.LOGGED_OUT
        self._subject: Optional[str] = None
        self._session_callbacks: List[Callable[[bool], None]] = []

        coordinator.add_refresh_callback(self._on_credentials_refreshed)
        coordinator.add_session_expired_callback(self._on_session_expired)

        logger.info("Session controller initialized")

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def subject(self) -> Optional[str]:
        return self._subject

    def is_authenticated(self) -> bool:
        return self._state is SessionState.LOGGED_IN

    def add_session_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._session_callbacks.append(callback)

    def _notify_session_change(self, is_authenticated: bool) -> None:
        for callback in self._session_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in session callback: {e}")

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        self._notify_session_change(state is SessionState.LOGGED_IN)

    def _adopt(self, pair: CredentialPair) -> None:
        claims = decode_claims(pair.access_token)
        self._subject = claims.subject if claims else None
        self.scheduler.arm(pair.access_token)
        self._set_state(SessionState.LOGGED_IN)

    def _on_credentials_refreshed(self, pair: CredentialPair) -> None:
        self._adopt(pair)

    def _on_session_expired(self, error: SessionExpiredError) -> None:
        logger.warning(f"Session expired: {error.message}")
        self.scheduler.cancel()
        self.coordinator.reset()
        self._subject = None
        self._set_state(SessionState.LOGGED_OUT)

    async def bootstrap(self) -> bool:
        """
        Restore the session persisted by a previous run.

        Returns:
            True if the session is authenticated afterwards
        """
        try:
            pair = await self.credential_store.load()
        except StorageError as e:
            logger.warning(f"Could not read stored credentials, starting logged out: {e}")
            pair = None

        if pair is None:
            logger.info("No stored credentials found")
            self._set_state(SessionState.LOGGED_OUT)
            return False

        claims = decode_claims(pair.access_token)
        if claims is not None and claims.expires_at is not None and not claims.is_expired():
            self._adopt(pair)
            self.audit_logger.log_session_event("restored", subject=self._subject)
            logger.info("Restored stored session")
            return True

        logger.info("Stored access token is expired or unreadable, refreshing")
        try:
            await self.coordinator.refresh(RefreshTrigger.BOOTSTRAP)
        except (RefreshFailure, SessionTerminatedError) as e:
            logger.info(f"Could not restore session: {e}")
            self._set_state(SessionState.LOGGED_OUT)
            return False

        self.audit_logger.log_session_event("restored", subject=self._subject)
        return True

    async def login(self, pair: CredentialPair) -> None:
        """
        Adopt a freshly issued credential pair.

        Raises:
            StorageError: the pair could not be persisted
        """
        await self.credential_store.save(pair)
        self._adopt(pair)

        self.audit_logger.log_session_event("login", subject=self._subject)
        logger.info("Logged in")

    async def authenticate(self, email: str, password: str) -> CredentialPair:
        """
        Log in with user credentials.

        Raises:
            AuthenticationError: the backend rejected the credentials
        """
        try:
            pair = await self.api_client.login(email, password)
        except Exception as e:
            self.audit_logger.log_authentication("password", success=False, failure_reason=str(e))
            raise

        await self.login(pair)
        self.audit_logger.log_authentication("password", subject=self._subject)
        return pair

    async def logout(self) -> None:
        """
        End the session.

        The timer and the coordinator are reset first so that nothing can
        start a refresh while the store is being cleared. Requests waiting for
        a refresh fail with SessionTerminatedError.
        """
        subject = self._subject

        self.scheduler.cancel()
        self.coordinator.reset()
        self._subject = None

        try:
            await self.credential_store.clear()
        finally:
            self._set_state(SessionState.LOGGED_OUT)
            self.audit_logger.log_session_event("logout", subject=subject)
            logger.info("Logged out")

    async def force_refresh(self) -> CredentialPair:
        """
        Refresh the credentials now.

        Raises:
            RefreshFailure: the refresh failed and the session was logged out
        """
        return await self.coordinator.refresh(RefreshTrigger.FORCED)

    async def shutdown(self) -> None:
        """Stop the refresh timer and release the HTTP session."""
        logger.info("Shutting down session controller")
        await self.scheduler.shutdown()
        await self.api_client.close()


def create_session_controller(config, credential_store: Optional[CredentialStore] = None) -> SessionController:
    """
    Wire a session controller from client configuration.

    Args:
        config: ClientConfiguration instance
        credential_store: Store to use instead of the configured backend

    Returns:
        Ready to bootstrap session controller
    """
    if credential_store is None:
        credential_store = create_credential_store(
            backend=config.get_storage_backend(),
            service_name=config.get_storage_service_name(),
            storage_path=config.get_storage_path()
        )

    api_client = FriendshipAPIClient(
        server_url=config.get_server_url(),
        credential_store=credential_store,
        timeout=config.get_server_timeout(),
        max_concurrent_requests=config.get_max_concurrent_requests(),
        public_endpoints=config.get_public_endpoints(),
        refresh_path=config.get_refresh_path(),
        login_path=config.get_login_path()
    )

    audit_logger = AuditLogger()
    coordinator = RefreshCoordinator(credential_store, api_client.exchange_refresh_token, audit_logger)
    api_client.set_refresh_coordinator(coordinator)

    scheduler = RefreshScheduler(
        coordinator.refresh_if_idle,
        safety_margin=config.get_refresh_safety_margin(),
        minimum_delay=config.get_refresh_minimum_delay()
    )

    return SessionController(api_client, credential_store, coordinator, scheduler, audit_logger)
