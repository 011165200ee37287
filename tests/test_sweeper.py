import asyncio
from unittest import mock

import pytest

from clock import FakeClock
from hana.service.sweeper import ExpirySweeper
from hana.storage.memory import MemoryStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    store = MemoryStore()
    user, _ = store.get_or_create_user("+15551234567", now=clock.now)
    store.create_verification_code("+15551234567", "123456", 10, now=clock.now)
    store.create_refresh_token(user.id, "live-token", 7, now=clock.now)
    store.create_refresh_token(user.id, "revoked-token", 7, now=clock.now)
    store.revoke_refresh_token("revoked-token")
    store.create_session(user.id, "a" * 64, 60, now=clock.now)
    return store


def test_sweep_removes_only_expired_or_revoked(store, clock):
    sweeper = ExpirySweeper(store, clock=clock)

    result = sweeper.sweep()
    assert (result.refresh_tokens, result.sessions, result.verification_codes) == (1, 0, 0)
    assert [t.token for t in store.refresh_tokens.values()] == ["live-token"]

    clock.advance(minutes=10)
    result = sweeper.sweep()
    assert result.verification_codes == 1
    assert result.sessions == 0

    clock.advance(minutes=50)
    assert sweeper.sweep().sessions == 1

    clock.advance(days=7)
    assert sweeper.sweep().refresh_tokens == 1


def test_sweep_is_idempotent(store, clock):
    sweeper = ExpirySweeper(store, clock=clock)
    clock.advance(days=8)
    first = sweeper.sweep()
    second = sweeper.sweep()
    assert first.total == 4
    assert second.total == 0


async def test_run_once_reports_failures_as_none():
    broken = mock.Mock()
    broken.sweep_expired.side_effect = RuntimeError("database unavailable")
    sweeper = ExpirySweeper(broken)
    assert await sweeper.run_once() is None


async def test_run_once_prunes_limiters(store, clock):
    limiter = mock.Mock()
    limiter.prune.return_value = 3
    sweeper = ExpirySweeper(store, limiters=[limiter], clock=clock)
    result = await sweeper.run_once()
    assert result.refresh_tokens == 1
    limiter.prune.assert_called_once_with()


async def test_run_periodic_sweeps_until_cancelled(store, clock):
    sweeper = ExpirySweeper(store, clock=clock)
    sleeps = mock.AsyncMock(side_effect=[None, None, asyncio.CancelledError()])
    with mock.patch.object(sweeper, "run_once", wraps=sweeper.run_once) as run_once:
        with mock.patch("hana.service.sweeper.asyncio.sleep", sleeps):
            await sweeper.run_periodic(3600)
    assert run_once.await_count == 2
    assert sleeps.await_args_list[0].args == (3600,)


async def test_run_periodic_stops_on_task_cancel(store, clock):
    sweeper = ExpirySweeper(store, clock=clock)
    task = asyncio.create_task(sweeper.run_periodic(3600))
    await asyncio.sleep(0)
    task.cancel()
    await task
    assert task.done() and not task.cancelled()
