"""
Shared fixtures: an in-process Friendship backend and a wired session.
"""

import asyncio
import itertools
import time

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from jose import jwt

from friendship_client.api_client import FriendshipAPIClient
from friendship_client.auth.refresh_coordinator import RefreshCoordinator
from friendship_client.auth.refresh_scheduler import RefreshScheduler
from friendship_client.auth.session_manager import SessionController
from friendship_client.auth.token_storage import MemoryCredentialStore
from friendship_shared.models import CredentialPair

TEST_SECRET = "test-secret-key"
TEST_EMAIL = "alice@example.com"
TEST_PASSWORD = "correct horse"

_token_ids = itertools.count(1)


def make_token(subject="42", expires_in=1200, **claims):
    """Mint an access token shaped like the backend's (id, Username, exp, iat)."""
    now = int(time.time())
    payload = {"id": subject, "Username": "alice", "iat": now, "jti": str(next(_token_ids))}
    if expires_in is not None:
        payload["exp"] = now + expires_in
    payload.update(claims)
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


class MockBackend:
    """Minimal Friendship backend: login, refresh, public and protected routes."""

    def __init__(self):
        self.url = None
        self.valid_access = set()
        self.valid_refresh = set()

        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_status = None
        self.reject_all_protected = False

        self.hold_unauthorized = 0
        self._held = 0
        self._release_unauthorized = asyncio.Event()

        # the n-th rejected request is answered after n * stagger_unauthorized seconds
        self.stagger_unauthorized = 0.0
        self._rejected = 0

        self.slow_waiting = 0
        self.slow_release = asyncio.Event()

        self.protected_requests = []
        self.public_requests = []

    def issue_pair(self, expires_in=1200) -> CredentialPair:
        access = make_token(expires_in=expires_in)
        refresh = f"refresh-{next(_token_ids)}"
        self.valid_access.add(access)
        self.valid_refresh.add(refresh)
        return CredentialPair(access, refresh)

    def revoke_access_tokens(self):
        self.valid_access.clear()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post('/users/login', self._login)
        app.router.add_post('/users/refresh', self._refresh)
        app.router.add_post('/sessions/register', self._register)
        app.router.add_get('/slow', self._slow)
        app.router.add_get('/boom', self._boom)
        app.router.add_get('/invalid', self._invalid)
        app.router.add_delete('/events/{event_id}', self._no_content)
        app.router.add_get('/plain', self._plain)
        app.router.add_route('*', '/events{tail:.*}', self._events)
        return app

    @staticmethod
    def _bearer(request):
        header = request.headers.get('Authorization', '')
        return header[len('Bearer '):] if header.startswith('Bearer ') else None

    def _authorized(self, request) -> bool:
        return not self.reject_all_protected and self._bearer(request) in self.valid_access

    async def _unauthorized(self):
        if self.stagger_unauthorized:
            delay = self._rejected * self.stagger_unauthorized
            self._rejected += 1
            await asyncio.sleep(delay)
        if self.hold_unauthorized:
            self._held += 1
            if self._held >= self.hold_unauthorized:
                self._release_unauthorized.set()
            await asyncio.wait_for(self._release_unauthorized.wait(), timeout=5)
        return web.json_response({'error': 'token is expired'}, status=401)

    async def _login(self, request):
        body = await request.json()
        if body.get('email') != TEST_EMAIL or body.get('password') != TEST_PASSWORD:
            return web.json_response({'error': 'invalid credentials'}, status=401)
        pair = self.issue_pair()
        return web.json_response(dict(pair.to_dict(), user={'id': 42, 'username': 'alice'}))

    async def _refresh(self, request):
        self.refresh_calls += 1
        body = await request.json()
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_status is not None:
            return web.json_response({'error': 'refresh rejected'}, status=self.refresh_status)

        token = body.get('refresh_token')
        if token not in self.valid_refresh:
            return web.json_response({'error': 'invalid refresh token'}, status=401)

        self.valid_refresh.discard(token)
        return web.json_response(self.issue_pair().to_dict())

    async def _register(self, request):
        self.public_requests.append(request.headers.get('Authorization'))
        return web.json_response({'error': 'verification required'}, status=401)

    async def _events(self, request):
        self.protected_requests.append((request.path, self._bearer(request)))
        if not self._authorized(request):
            return await self._unauthorized()

        body = await request.json() if request.can_read_body else None
        return web.json_response({'path': request.path, 'method': request.method, 'body': body})

    async def _slow(self, request):
        self.slow_waiting += 1
        try:
            await asyncio.wait_for(self.slow_release.wait(), timeout=5)
        finally:
            self.slow_waiting -= 1
        return web.json_response({'slow': True})

    async def _boom(self, request):
        return web.json_response({'error': 'database unavailable'}, status=500)

    async def _invalid(self, request):
        return web.json_response({'error': 'title is required'}, status=422)

    async def _no_content(self, request):
        if not self._authorized(request):
            return await self._unauthorized()
        return web.Response(status=204)

    async def _plain(self, request):
        if not self._authorized(request):
            return await self._unauthorized()
        return web.Response(text='pong')


async def wait_for_condition(predicate, timeout=2.0):
    """Poll until predicate() is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def backend():
    mock = MockBackend()
    server = TestServer(mock.build_app())
    await server.start_server()
    mock.url = f"http://{server.host}:{server.port}"
    yield mock
    mock.slow_release.set()
    mock._release_unauthorized.set()
    await server.close()


@pytest_asyncio.fixture
async def make_session(backend):
    """Factory wiring store, gate, coordinator, scheduler and controller."""
    created = []

    def factory(store=None, max_concurrent_requests=50, safety_margin=120.0,
                minimum_delay=30.0, timeout=10.0):
        store = store if store is not None else MemoryCredentialStore()
        api_client = FriendshipAPIClient(
            backend.url, store,
            timeout=timeout,
            max_concurrent_requests=max_concurrent_requests
        )
        coordinator = RefreshCoordinator(store, api_client.exchange_refresh_token)
        api_client.set_refresh_coordinator(coordinator)
        scheduler = RefreshScheduler(
            coordinator.refresh_if_idle,
            safety_margin=safety_margin,
            minimum_delay=minimum_delay
        )
        controller = SessionController(api_client, store, coordinator, scheduler)
        created.append(controller)
        return controller

    yield factory

    for controller in created:
        await controller.shutdown()


@pytest.fixture
def session(make_session):
    return make_session()
