"""
Tests for proactive refresh scheduling.
"""

import asyncio
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from friendship_client.auth.refresh_scheduler import RefreshScheduler, compute_refresh_delay
from friendship_shared.exceptions import RefreshFailure
from friendship_shared.models import CredentialPair
from conftest import make_token

FIXED_NOW = 1_700_000_000.0


def test_delay_is_expiry_minus_safety_margin():
    assert compute_refresh_delay(FIXED_NOW + 1200, FIXED_NOW) == 1080


def test_delay_never_below_minimum():
    assert compute_refresh_delay(FIXED_NOW + 100, FIXED_NOW) == 30
    assert compute_refresh_delay(FIXED_NOW - 500, FIXED_NOW) == 30
    assert compute_refresh_delay(FIXED_NOW + 100, FIXED_NOW, minimum_delay=5) == 5


def test_delay_accepts_datetime_and_custom_margin():
    expires_at = datetime.fromtimestamp(FIXED_NOW + 600, tz=timezone.utc)
    assert compute_refresh_delay(expires_at, FIXED_NOW, safety_margin=60) == 540


@pytest.mark.asyncio
async def test_arm_schedules_single_timer():
    refresh = AsyncMock(return_value=None)
    now = time.time()
    scheduler = RefreshScheduler(refresh, clock=lambda: now)

    delay = scheduler.arm(make_token(expires_in=1200))
    first_task = scheduler._task

    assert scheduler.is_armed
    assert 1070 <= delay <= 1080
    assert scheduler.next_delay == delay

    scheduler.arm(make_token(expires_in=600))
    await asyncio.sleep(0)

    assert first_task.cancelled()
    assert scheduler.is_armed
    assert 470 <= scheduler.next_delay <= 480

    scheduler.cancel()
    assert not scheduler.is_armed
    assert scheduler.next_delay is None
    refresh.assert_not_called()


@pytest.mark.asyncio
async def test_token_without_expiry_is_not_scheduled():
    scheduler = RefreshScheduler(AsyncMock())

    assert scheduler.arm(make_token(expires_in=None)) is None
    assert not scheduler.is_armed

    assert scheduler.arm("garbage") is None
    assert not scheduler.is_armed


@pytest.mark.asyncio
async def test_arming_without_expiry_cancels_previous_timer():
    scheduler = RefreshScheduler(AsyncMock())
    scheduler.arm(make_token(expires_in=1200))

    scheduler.arm(make_token(expires_in=None))

    assert not scheduler.is_armed


@pytest.mark.asyncio
async def test_timer_fires_refresh():
    pair = CredentialPair("a", "r")
    refresh = AsyncMock(return_value=pair)
    scheduler = RefreshScheduler(refresh, safety_margin=1200, minimum_delay=0.01)

    scheduler.arm(make_token(expires_in=1200))
    await asyncio.sleep(0.1)

    refresh.assert_awaited_once()
    # re-arming is the session controller's job
    assert not scheduler.is_armed


@pytest.mark.asyncio
async def test_failed_proactive_refresh_is_not_retried():
    refresh = AsyncMock(side_effect=RefreshFailure("refresh rejected"))
    scheduler = RefreshScheduler(refresh, safety_margin=1200, minimum_delay=0.01)

    scheduler.arm(make_token(expires_in=1200))
    await asyncio.sleep(0.1)

    assert refresh.await_count == 1
    assert not scheduler.is_armed


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires():
    refresh = AsyncMock()
    scheduler = RefreshScheduler(refresh, safety_margin=1200, minimum_delay=0.05)

    scheduler.arm(make_token(expires_in=1200))
    scheduler.cancel()
    await asyncio.sleep(0.1)

    refresh.assert_not_called()


@pytest.mark.asyncio
async def test_rearm_from_refresh_callback_keeps_new_timer():
    """The firing timer detaches itself so arm() inside the refresh does not cancel it."""
    scheduler = None

    async def refresh():
        scheduler.arm(make_token(expires_in=1200))
        return CredentialPair("a", "r")

    scheduler = RefreshScheduler(refresh, safety_margin=120, minimum_delay=0.01)
    scheduler.arm(make_token(expires_in=0))
    await asyncio.sleep(0.1)

    assert scheduler.is_armed
    assert scheduler.next_delay > 1000
    scheduler.cancel()


@pytest.mark.asyncio
async def test_shutdown_waits_for_cancelled_timer():
    scheduler = RefreshScheduler(AsyncMock())
    scheduler.arm(make_token(expires_in=1200))
    task = scheduler._task

    await scheduler.shutdown()

    assert task.done()
    assert not scheduler.is_armed
