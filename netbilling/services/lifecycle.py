"""
NetBilling - Máquina de estados del cliente

    APPROVE          pending → approved
    REJECT           pending → rejected
    ACTIVATE         approved → active
    SERVICE_RENEWED  approved | active | suspended → active
    SUSPEND          active → suspended
    REACTIVATE       suspended → active
    DISCONNECT       active | suspended → disconnected
    REAPPLY          rejected | disconnected → pending

Toda transición que termina en active, suspended o disconnected deja
encolado exactamente un comando de sincronización de red en el cliente
(radius_sync_status = pending). El envío lo hace el dispatcher tras el commit.
Las que terminan en approved, pending o rejected no tocan los campos de
sincronización: un comando anterior sin confirmar sigue pendiente.
"""
import enum
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from netbilling.exceptions import InvalidTransition
from netbilling.models.client import Client, ClientStatus, RadiusSyncStatus
from netbilling.models.sync import SyncAction


class LifecycleEvent(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ACTIVATE = "activate"
    SERVICE_RENEWED = "service_renewed"
    SUSPEND = "suspend"
    REACTIVATE = "reactivate"
    DISCONNECT = "disconnect"
    REAPPLY = "reapply"


S = ClientStatus

TRANSITIONS: dict[LifecycleEvent, tuple[frozenset, ClientStatus]] = {
    LifecycleEvent.APPROVE: (frozenset({S.PENDING}), S.APPROVED),
    LifecycleEvent.REJECT: (frozenset({S.PENDING}), S.REJECTED),
    LifecycleEvent.ACTIVATE: (frozenset({S.APPROVED}), S.ACTIVE),
    LifecycleEvent.SERVICE_RENEWED: (frozenset({S.APPROVED, S.ACTIVE, S.SUSPENDED}), S.ACTIVE),
    LifecycleEvent.SUSPEND: (frozenset({S.ACTIVE}), S.SUSPENDED),
    LifecycleEvent.REACTIVATE: (frozenset({S.SUSPENDED}), S.ACTIVE),
    LifecycleEvent.DISCONNECT: (frozenset({S.ACTIVE, S.SUSPENDED}), S.DISCONNECTED),
    LifecycleEvent.REAPPLY: (frozenset({S.REJECTED, S.DISCONNECTED}), S.PENDING),
}

SYNC_ACTION_FOR_STATUS = {
    S.ACTIVE: SyncAction.ENSURE_CONNECTED,
    S.SUSPENDED: SyncAction.SUSPEND,
    S.DISCONNECTED: SyncAction.DISCONNECT,
}


def next_status(current: ClientStatus, event: LifecycleEvent) -> ClientStatus:
    sources, target = TRANSITIONS[event]
    if current not in sources:
        raise InvalidTransition(
            f"No se puede aplicar '{event.value}' a un cliente en estado '{current.value}'"
        )
    return target


def event_for_target(current: ClientStatus, target: ClientStatus) -> LifecycleEvent:
    """Traduce una acción administrativa (estado destino) al evento que la produce."""
    for event, (sources, to) in TRANSITIONS.items():
        if event == LifecycleEvent.SERVICE_RENEWED:
            continue
        if to == target and current in sources:
            return event
    raise InvalidTransition(
        f"No existe transición de '{current.value}' a '{target.value}'"
    )


def sync_action_for(status: ClientStatus) -> Optional[SyncAction]:
    return SYNC_ACTION_FOR_STATUS.get(status)


def outstanding_action(client: Client) -> Optional[SyncAction]:
    """
    Comando que quedó encolado sin confirmarse. Un cliente que pasa a
    pending o rejected conserva, por ejemplo, el disconnect que falló.
    """
    if client.radius_sync_status == RadiusSyncStatus.SYNCED or not client.radius_sync_action:
        return None
    return SyncAction(client.radius_sync_action)


def enqueue_sync(client: Client, action: SyncAction, now: datetime) -> None:
    """Marca al cliente con un comando pendiente; reinicia el contador de reintentos."""
    client.radius_sync_status = RadiusSyncStatus.PENDING
    client.radius_sync_action = action.value
    client.radius_sync_attempts = 0
    client.next_radius_sync_at = now
    client.last_radius_sync_error = None


def ensure_radius_credentials(client: Client) -> None:
    """Genera usuario/contraseña RADIUS si el cliente aún no los tiene."""
    if not client.radius_username:
        base = re.sub(r"[^a-z0-9]", "", (client.name or "").lower())[:20] or "client"
        client.radius_username = f"{base}{client.id}"
    if not client.radius_password:
        client.radius_password = secrets.token_urlsafe(9)


def apply_event(
    client: Client,
    event: LifecycleEvent,
    now: datetime,
    reason: Optional[str] = None,
    grace_days: Optional[int] = None,
) -> Optional[SyncAction]:
    """
    Aplica el evento sobre el cliente (sin commit).
    Retorna la acción de red encolada, o None si el destino no la requiere.
    """
    new_status = next_status(client.status, event)
    client.status = new_status
    client.status_changed_at = now
    if reason is not None:
        client.status_reason = reason

    if event == LifecycleEvent.APPROVE:
        ensure_radius_credentials(client)

    if new_status == S.SUSPENDED:
        client.disconnection_scheduled_at = (
            now + timedelta(days=grace_days) if grace_days is not None else None
        )
    elif new_status in (S.ACTIVE, S.DISCONNECTED):
        client.disconnection_scheduled_at = None

    action = sync_action_for(new_status)
    if action is not None:
        enqueue_sync(client, action, now)
    return action
