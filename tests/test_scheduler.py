"""
Scheduler: selección de candidatos, barrido, reintentos y tiempo máximo por cliente.
"""
import asyncio
from datetime import timedelta

import pytest

from netbilling.models.client import Client, ClientStatus, RadiusSyncStatus
from netbilling.models.sync import SyncAction
from netbilling.scheduler import SchedulerContext


@pytest.fixture
def context(session_factory, dispatcher, notifier, locks, settings) -> SchedulerContext:
    return SchedulerContext(session_factory, dispatcher, notifier, locks, settings)


async def test_sweep_processes_only_due_clients(context, make_client, reload, enforcement, now):
    renews = await make_client(balance_cents=50000, end=now + timedelta(hours=2))
    suspends = await make_client(balance_cents=0, end=now - timedelta(hours=1))
    await make_client(balance_cents=50000, end=now + timedelta(days=10))
    reactivates = await make_client(status=ClientStatus.SUSPENDED, balance_cents=60000, end=now - timedelta(days=2))
    await make_client(status=ClientStatus.SUSPENDED, balance_cents=0, end=now - timedelta(days=2))
    await make_client(status=ClientStatus.PENDING)

    stats = await context.run_renewal_sweep(now=now)

    assert stats["candidates"] == 3
    assert stats["processed"] == 3
    assert (await reload(Client, renews.id)).subscription_end_date == now + timedelta(hours=2, days=30)
    assert (await reload(Client, suspends.id)).status == ClientStatus.SUSPENDED
    assert (await reload(Client, reactivates.id)).status == ClientStatus.ACTIVE
    assert sorted(enforcement.actions()) == ["connect", "connect", "suspend"]


async def test_sweep_includes_suspended_clients_past_grace(context, make_client, reload, enforcement, now):
    client = await make_client(
        status=ClientStatus.SUSPENDED, balance_cents=0, end=now - timedelta(days=31),
        disconnection_scheduled_at=now - timedelta(minutes=5),
    )

    assert await context.renewal_candidates(now) == [client.id]
    await context.run_renewal_sweep(now=now)

    assert (await reload(Client, client.id)).status == ClientStatus.DISCONNECTED
    assert enforcement.actions() == ["disconnect"]


async def test_sweep_skips_client_held_by_another_trigger(context, make_client, reload, locks, now):
    client = await make_client(balance_cents=50000, end=now + timedelta(hours=2))

    async with locks.hold(client.id):
        stats = await context.run_renewal_sweep(now=now)

    assert stats["skipped"] == 1
    assert stats["processed"] == 0
    assert (await reload(Client, client.id)).wallet_balance_cents == 50000


async def test_retry_only_due_and_not_exhausted(context, make_client, reload, enforcement, now):
    due = await make_client(
        radius_sync_status=RadiusSyncStatus.FAILED, radius_sync_attempts=1,
        next_radius_sync_at=now - timedelta(minutes=1),
    )
    await make_client(
        radius_sync_status=RadiusSyncStatus.FAILED, radius_sync_attempts=1,
        next_radius_sync_at=now + timedelta(minutes=10),
    )
    await make_client(
        radius_sync_status=RadiusSyncStatus.FAILED, radius_sync_attempts=3,
        next_radius_sync_at=now - timedelta(hours=1),
    )
    pending = await make_client(
        status=ClientStatus.SUSPENDED, radius_sync_status=RadiusSyncStatus.PENDING,
        radius_sync_action=SyncAction.SUSPEND.value,
    )

    stats = await context.run_sync_retry(now=now)

    assert stats["candidates"] == 2
    assert enforcement.actions() == ["connect", "suspend"]
    assert (await reload(Client, due.id)).radius_sync_status == RadiusSyncStatus.SYNCED
    assert (await reload(Client, pending.id)).radius_sync_status == RadiusSyncStatus.SYNCED


async def test_retry_failure_grows_backoff(context, make_client, reload, enforcement, now):
    client = await make_client(
        radius_sync_status=RadiusSyncStatus.FAILED, radius_sync_attempts=2,
        next_radius_sync_at=now - timedelta(seconds=1),
    )
    enforcement.status_code = 502

    await context.run_sync_retry(now=now)

    fresh = await reload(Client, client.id)
    assert fresh.radius_sync_status == RadiusSyncStatus.FAILED
    assert fresh.radius_sync_attempts == 3
    assert fresh.next_radius_sync_at == now + timedelta(seconds=240)
    assert await context.retry_candidates(now + timedelta(days=1)) == []


async def test_retry_for_vanished_client_is_noop(service, enforcement):
    assert await service.retry_sync_locked(424242) is None
    assert enforcement.requests == []


async def test_retry_of_status_without_command_marks_synced(service, make_client, reload, enforcement, now):
    client = await make_client(status=ClientStatus.PENDING, radius_sync_status=RadiusSyncStatus.FAILED,
                               radius_sync_attempts=1)

    assert await service.retry_sync_locked(client.id, now) is None
    assert (await reload(Client, client.id)).radius_sync_status == RadiusSyncStatus.SYNCED
    assert enforcement.requests == []


async def test_slow_client_is_abandoned_and_marked_failed(
    session_factory, dispatcher, notifier, locks, settings, make_client, reload, now,
):
    fast = settings.model_copy(update={"CLIENT_WORK_TIMEOUT_SECONDS": 0.05})
    context = SchedulerContext(session_factory, dispatcher, notifier, locks, fast)
    slow = await make_client()
    other = await make_client()

    async def work(service, client_id, at):
        if client_id == slow.id:
            await asyncio.sleep(5)

    stats = await context._fan_out([slow.id, other.id], work, now)

    assert stats["timed_out"] == 1
    assert stats["processed"] == 1
    fresh = await reload(Client, slow.id)
    assert fresh.radius_sync_status == RadiusSyncStatus.FAILED
    assert fresh.radius_sync_attempts == 1
    assert fresh.next_radius_sync_at == now + timedelta(seconds=60)
    assert not locks.is_locked(slow.id)


async def test_one_failing_client_does_not_stop_the_tick(context, make_client, now):
    bad = await make_client()
    good = await make_client()

    async def work(service, client_id, at):
        if client_id == bad.id:
            raise RuntimeError("boom")

    stats = await context._fan_out([bad.id, good.id], work, now)

    assert stats == {"candidates": 2, "processed": 1, "skipped": 0, "failed": 1, "timed_out": 0}


async def test_start_registers_jobs_and_stop_shuts_down(context):
    context.start()
    try:
        assert context.running
        assert {job.id for job in context._scheduler.get_jobs()} == {"renewal_sweep", "sync_retry"}
    finally:
        context.stop()
    assert not context.running
