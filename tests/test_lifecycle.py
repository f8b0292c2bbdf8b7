"""
Máquina de estados del cliente.
"""
from datetime import datetime, timedelta, timezone

import pytest

from netbilling.exceptions import InvalidTransition
from netbilling.models.client import Client, ClientStatus, RadiusSyncStatus
from netbilling.models.sync import SyncAction
from netbilling.services import lifecycle
from netbilling.services.lifecycle import LifecycleEvent as E

S = ClientStatus
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

VALID = [
    (S.PENDING, E.APPROVE, S.APPROVED),
    (S.PENDING, E.REJECT, S.REJECTED),
    (S.APPROVED, E.ACTIVATE, S.ACTIVE),
    (S.APPROVED, E.SERVICE_RENEWED, S.ACTIVE),
    (S.ACTIVE, E.SERVICE_RENEWED, S.ACTIVE),
    (S.SUSPENDED, E.SERVICE_RENEWED, S.ACTIVE),
    (S.ACTIVE, E.SUSPEND, S.SUSPENDED),
    (S.SUSPENDED, E.REACTIVATE, S.ACTIVE),
    (S.ACTIVE, E.DISCONNECT, S.DISCONNECTED),
    (S.SUSPENDED, E.DISCONNECT, S.DISCONNECTED),
    (S.REJECTED, E.REAPPLY, S.PENDING),
    (S.DISCONNECTED, E.REAPPLY, S.PENDING),
]


@pytest.mark.parametrize("current,event,expected", VALID)
def test_valid_transitions(current, event, expected):
    assert lifecycle.next_status(current, event) == expected


@pytest.mark.parametrize("current,event", [
    (S.PENDING, E.ACTIVATE),
    (S.PENDING, E.SUSPEND),
    (S.APPROVED, E.SUSPEND),
    (S.SUSPENDED, E.SUSPEND),
    (S.DISCONNECTED, E.REACTIVATE),
    (S.REJECTED, E.APPROVE),
    (S.ACTIVE, E.REAPPLY),
    (S.DISCONNECTED, E.SERVICE_RENEWED),
])
def test_invalid_transitions_raise(current, event):
    with pytest.raises(InvalidTransition):
        lifecycle.next_status(current, event)


def test_every_status_pair_outside_the_table_is_rejected():
    allowed = {(c, e) for c, e, _ in VALID}
    for current in S:
        for event in E:
            if (current, event) in allowed:
                continue
            with pytest.raises(InvalidTransition):
                lifecycle.next_status(current, event)


@pytest.mark.parametrize("current,target,event", [
    (S.PENDING, S.APPROVED, E.APPROVE),
    (S.PENDING, S.REJECTED, E.REJECT),
    (S.APPROVED, S.ACTIVE, E.ACTIVATE),
    (S.SUSPENDED, S.ACTIVE, E.REACTIVATE),
    (S.ACTIVE, S.SUSPENDED, E.SUSPEND),
    (S.SUSPENDED, S.DISCONNECTED, E.DISCONNECT),
    (S.DISCONNECTED, S.PENDING, E.REAPPLY),
])
def test_event_for_admin_target(current, target, event):
    assert lifecycle.event_for_target(current, target) == event


def test_event_for_unreachable_target_raises():
    with pytest.raises(InvalidTransition):
        lifecycle.event_for_target(S.PENDING, S.ACTIVE)


def _client(status, **kw):
    kw.setdefault("radius_sync_status", RadiusSyncStatus.SYNCED)
    kw.setdefault("radius_sync_attempts", 3)
    return Client(id=7, name="Ana María", status=status, **kw)


@pytest.mark.parametrize("current,event,action", [
    (S.APPROVED, E.ACTIVATE, SyncAction.ENSURE_CONNECTED),
    (S.ACTIVE, E.SUSPEND, SyncAction.SUSPEND),
    (S.SUSPENDED, E.DISCONNECT, SyncAction.DISCONNECT),
])
def test_network_targets_enqueue_one_sync(current, event, action):
    client = _client(current)

    queued = lifecycle.apply_event(client, event, NOW)

    assert queued == action
    assert client.radius_sync_status == RadiusSyncStatus.PENDING
    assert client.radius_sync_action == action.value
    assert client.radius_sync_attempts == 0
    assert client.next_radius_sync_at == NOW


def test_non_network_target_enqueues_nothing():
    client = _client(S.PENDING)

    assert lifecycle.apply_event(client, E.REJECT, NOW, reason="Zona sin cobertura") is None
    assert client.status == S.REJECTED
    assert client.status_reason == "Zona sin cobertura"
    assert client.radius_sync_status == RadiusSyncStatus.SYNCED


def test_reapply_keeps_unconfirmed_disconnect_outstanding():
    client = _client(S.DISCONNECTED, radius_sync_status=RadiusSyncStatus.FAILED,
                     radius_sync_action=SyncAction.DISCONNECT.value, radius_sync_attempts=2)

    assert lifecycle.apply_event(client, E.REAPPLY, NOW) is None

    assert client.status == S.PENDING
    assert client.radius_sync_status == RadiusSyncStatus.FAILED
    assert lifecycle.outstanding_action(client) == SyncAction.DISCONNECT


@pytest.mark.parametrize("sync_status,action", [
    (RadiusSyncStatus.SYNCED, SyncAction.DISCONNECT.value),
    (RadiusSyncStatus.FAILED, None),
])
def test_nothing_outstanding(sync_status, action):
    client = _client(S.PENDING, radius_sync_status=sync_status, radius_sync_action=action)

    assert lifecycle.outstanding_action(client) is None


def test_approve_generates_radius_credentials():
    client = _client(S.PENDING)

    lifecycle.apply_event(client, E.APPROVE, NOW)

    assert client.radius_username == "anamara7"
    assert client.radius_password


def test_approve_keeps_existing_credentials():
    client = _client(S.PENDING, radius_username="ana", radius_password="x")

    lifecycle.apply_event(client, E.APPROVE, NOW)

    assert (client.radius_username, client.radius_password) == ("ana", "x")


def test_suspend_schedules_disconnection_and_reactivation_clears_it():
    client = _client(S.ACTIVE)

    lifecycle.apply_event(client, E.SUSPEND, NOW, grace_days=30)
    assert client.disconnection_scheduled_at == NOW + timedelta(days=30)

    lifecycle.apply_event(client, E.REACTIVATE, NOW)
    assert client.disconnection_scheduled_at is None


def test_suspend_without_grace_never_schedules_disconnection():
    client = _client(S.ACTIVE)
    lifecycle.apply_event(client, E.SUSPEND, NOW, grace_days=None)
    assert client.disconnection_scheduled_at is None
