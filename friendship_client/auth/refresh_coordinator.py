"""
Refresh Coordinator for the Friendship session client.

Serializes credential refreshes: however many protected requests fail with
an authentication error at the same time, exactly one refresh exchange is
issued. Requests that fail while it is in flight wait in arrival order and
are replayed, or rejected, when it settles.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional, Any, Callable, Awaitable, List, Deque

from friendship_client.auth.claims import decode_claims
from friendship_shared.exceptions import (
    AuthenticationError, RefreshFailure, SessionExpiredError,
    SessionTerminatedError, StorageError
)
from friendship_shared.interfaces import ICredentialStore
from friendship_shared.logging_config import AuditLogger
from friendship_shared.models import CredentialPair, RefreshState, RefreshTrigger, RequestDescriptor

logger = logging.getLogger(__name__)

Replay = Callable[[RequestDescriptor], Awaitable[Any]]
Exchange = Callable[[str], Awaitable[CredentialPair]]


@dataclass
class _Waiter:
    descriptor: RequestDescriptor
    error: AuthenticationError
    replay: Replay
    future: 'asyncio.Future[asyncio.Task]'


class RefreshCoordinator:
    """
    Owns the refresh state machine.

    The IDLE to REFRESHING transition happens synchronously in the caller's
    step of the event loop, so no lock is needed: whoever observes IDLE first
    starts the refresh, everybody else joins it.
    """

    def __init__(
        self,
        credential_store: ICredentialStore,
        exchange: Exchange,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.credential_store = credential_store
        self._exchange = exchange
        self.audit_logger = audit_logger or AuditLogger()

        self._state = RefreshState.IDLE
        self._waiters: Deque[_Waiter] = deque()
        self._refresh_task: Optional[asyncio.Task] = None
        self._generation = 0

        self.refresh_count = 0

        self._refresh_callbacks: List[Callable[[CredentialPair], None]] = []
        self._session_expired_callbacks: List[Callable[[SessionExpiredError], None]] = []

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    def add_refresh_callback(self, callback: Callable[[CredentialPair], None]) -> None:
        """
        Add callback invoked with the new pair after every successful refresh.

        Args:
            callback: Function to call with the new credential pair
        """
        self._refresh_callbacks.append(callback)

    def add_session_expired_callback(self, callback: Callable[[SessionExpiredError], None]) -> None:
        """
        Add callback invoked when credentials were discarded as unrecoverable.

        Args:
            callback: Function to call with the session expired error
        """
        self._session_expired_callbacks.append(callback)

    def _notify_refresh(self, pair: CredentialPair) -> None:
        for callback in self._refresh_callbacks:
            try:
                callback(pair)
            except Exception as e:
                logger.error(f"Error in refresh callback: {e}")

    def _notify_session_expired(self, error: SessionExpiredError) -> None:
        for callback in self._session_expired_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error in session expired callback: {e}")

    async def recover(
        self,
        descriptor: RequestDescriptor,
        error: AuthenticationError,
        replay: Replay
    ) -> Any:
        """
        Recover a protected request that failed with an authentication error.

        Args:
            descriptor: The failed request, already marked as retried
            error: The authentication error it failed with
            replay: Coroutine function that reissues a descriptor

        Returns:
            The result of the replayed request

        Raises:
            AuthenticationError: the original error, if the refresh failed
            SessionTerminatedError: logout happened before the replay
        """
        if self._state is RefreshState.IDLE and await self._credential_rotated(error):
            # a refresh settled after this request went out
            logger.debug(
                f"Replaying {descriptor.method} {descriptor.path} with the already refreshed credential"
            )
            return await replay(descriptor)

        if self._state is RefreshState.REFRESHING:
            future = asyncio.get_running_loop().create_future()
            self._waiters.append(_Waiter(descriptor, error, replay, future))
            logger.debug(
                f"Queued {descriptor.method} {descriptor.path} behind refresh "
                f"({len(self._waiters)} waiting)"
            )
            replay_task = await future
            return await replay_task

        task = self._begin_refresh(RefreshTrigger.REACTIVE)
        try:
            await asyncio.shield(task)
        except RefreshFailure:
            raise error

        return await replay(descriptor)

    async def refresh(self, trigger: RefreshTrigger = RefreshTrigger.FORCED) -> CredentialPair:
        """
        Refresh now, or join the refresh already in flight.

        Raises:
            RefreshFailure: the exchange failed; credentials were cleared
            SessionTerminatedError: logout happened while refreshing
        """
        if self._state is RefreshState.REFRESHING and self._refresh_task is not None:
            logger.debug(f"Joining refresh already in flight ({trigger.value})")
            return await asyncio.shield(self._refresh_task)

        return await asyncio.shield(self._begin_refresh(trigger))

    async def refresh_if_idle(
        self,
        trigger: RefreshTrigger = RefreshTrigger.PROACTIVE
    ) -> Optional[CredentialPair]:
        """
        Refresh only if no refresh is in flight.

        Returns:
            The new pair, or None when skipped
        """
        if self._state is RefreshState.REFRESHING:
            logger.debug(f"Skipping {trigger.value} refresh: one is already in flight")
            return None

        return await asyncio.shield(self._begin_refresh(trigger))

    async def abandon(self, error: AuthenticationError) -> None:
        """
        Give up on the session after a replayed request was rejected again.

        Clears the stored credentials and notifies session expired listeners.
        """
        generation = self._generation
        try:
            await self.credential_store.clear()
        except StorageError as e:
            logger.error(f"Failed to clear credentials after repeated rejection: {e}")

        if generation != self._generation:
            return

        self.audit_logger.log_session_event("expired", reason="credential rejected after refresh")
        self._notify_session_expired(SessionExpiredError(cause=error))

    def reset(self) -> None:
        """
        Drop all refresh state for logout.

        Waiting requests are resolved with SessionTerminatedError and a refresh
        still in flight can no longer store its result.
        """
        self._generation += 1
        self._state = RefreshState.IDLE
        self._refresh_task = None

        waiters = self._take_waiters()
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(SessionTerminatedError())

        if waiters:
            logger.info(f"Terminated {len(waiters)} requests waiting for a refresh")

    async def _credential_rotated(self, error: AuthenticationError) -> bool:
        """True if the stored access credential is not the one the request was rejected with."""
        try:
            pair = await self.credential_store.load()
        except StorageError:
            return False

        return pair is not None and pair.access_token != error.access_token

    def _take_waiters(self) -> List[_Waiter]:
        waiters = list(self._waiters)
        self._waiters.clear()
        return waiters

    def _begin_refresh(self, trigger: RefreshTrigger) -> asyncio.Task:
        self._state = RefreshState.REFRESHING
        task = asyncio.create_task(self._run_refresh(trigger, self._generation))
        task.add_done_callback(self._refresh_done)
        self._refresh_task = task
        logger.info(f"Starting {trigger.value} credential refresh")
        return task

    @staticmethod
    def _refresh_done(task: asyncio.Task) -> None:
        # awaiters observe the outcome through shield()
        if not task.cancelled():
            task.exception()

    async def _run_refresh(self, trigger: RefreshTrigger, generation: int) -> CredentialPair:
        try:
            pair = await self._exchange_current_token()
            if generation != self._generation:
                logger.info("Discarding refreshed credentials: session was terminated")
                raise SessionTerminatedError()
            await self.credential_store.save(pair)
        except (RefreshFailure, StorageError) as e:
            if isinstance(e, RefreshFailure):
                failure = e
            else:
                failure = RefreshFailure("Failed to store refreshed credentials", cause=e)

            if not await self._fail_refresh(failure, trigger, generation):
                raise SessionTerminatedError() from failure
            raise failure

        if generation != self._generation:
            # logout's clear is queued behind this save on the store lock
            raise SessionTerminatedError()

        self._complete_refresh(pair, trigger)
        return pair

    async def _exchange_current_token(self) -> CredentialPair:
        try:
            pair = await self.credential_store.load()
        except StorageError as e:
            raise RefreshFailure("Failed to read the refresh credential", cause=e)

        if pair is None:
            raise RefreshFailure("No refresh credential available")

        self.refresh_count += 1
        try:
            return await self._exchange(pair.refresh_token)
        except RefreshFailure:
            raise
        except Exception as e:
            raise RefreshFailure(f"Credential refresh failed: {e}", cause=e)

    def _complete_refresh(self, pair: CredentialPair, trigger: RefreshTrigger) -> None:
        self._state = RefreshState.IDLE
        self._refresh_task = None

        replayed = 0
        for waiter in self._take_waiters():
            if waiter.future.done():
                continue
            waiter.future.set_result(asyncio.create_task(waiter.replay(waiter.descriptor)))
            replayed += 1

        claims = decode_claims(pair.access_token)
        logger.info(f"Credential refresh ({trigger.value}) succeeded, replaying {replayed} queued requests")
        self.audit_logger.log_token_refresh(
            trigger=trigger.value,
            result="success",
            subject=claims.subject if claims else None,
            replayed=replayed
        )

        self._notify_refresh(pair)

    async def _fail_refresh(
        self,
        failure: RefreshFailure,
        trigger: RefreshTrigger,
        generation: int
    ) -> bool:
        """
        Clear credentials and reject every waiter with its own error.

        Returns:
            False if the session was terminated in the meantime
        """
        if generation != self._generation:
            return False

        logger.warning(f"Credential refresh ({trigger.value}) failed: {failure.message}")

        # still REFRESHING here, so late arrivals queue up and are rejected below
        try:
            await self.credential_store.clear()
        except StorageError as e:
            logger.error(f"Failed to clear credentials after refresh failure: {e}")

        if generation != self._generation:
            return False

        self._state = RefreshState.IDLE
        self._refresh_task = None

        rejected = 0
        for waiter in self._take_waiters():
            if waiter.future.done():
                continue
            waiter.future.set_exception(waiter.error)
            rejected += 1

        self.audit_logger.log_token_refresh(
            trigger=trigger.value,
            result="failure",
            rejected=rejected,
            error_message=failure.message
        )
        self.audit_logger.log_session_event("expired", reason=failure.message)

        self._notify_session_expired(SessionExpiredError(cause=failure))
        return True
