"""
NetBilling - Servicio de Facturación
Orquesta los disparadores (webhook de pago, scheduler, acciones admin):

  1. Bloquea al cliente (lock por cliente) y lo relee de la BD.
  2. El evaluador de renovación / la máquina de estados deciden.
  3. Ledger + fechas + estado se confirman en un solo commit.
  4. El dispatcher envía el comando de red y registra el resultado.
  5. Se emite la notificación (best-effort).

Los métodos que terminan en `_locked` asumen que quien llama ya tiene
el lock del cliente (lo usa el scheduler con try_hold).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from netbilling.config import Settings, get_settings
from netbilling.exceptions import (
    ClientNotFound, ConcurrentModification, InvalidTransition, PackageNotFound,
    InsufficientFunds as InsufficientFundsError,
)
from netbilling.models.client import Client, ClientStatus, RadiusSyncStatus
from netbilling.models.plan import ServicePackage
from netbilling.models.sync import SyncAction
from netbilling.models.wallet import PaymentMethod
from netbilling.services import ledger, lifecycle, renewal
from netbilling.services.lifecycle import LifecycleEvent
from netbilling.services.locks import ClientLockRegistry
from netbilling.services.network_sync import NetworkSyncDispatcher, SyncResult, backoff_seconds
from netbilling.services.notifications import NotificationEmitter, NotificationEvent

logger = logging.getLogger("billing_service")

SPEED_FIELDS = ("download_speed", "upload_speed")
PACKAGE_SYNC_FIELDS = SPEED_FIELDS + ("groupname", "session_timeout", "idle_timeout")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RenewalOutcome:
    client_id: int
    decision: renewal.RenewalDecision
    status: Optional[ClientStatus] = None
    sync: Optional[SyncResult] = None

    @property
    def renewed(self) -> bool:
        return isinstance(self.decision, renewal.Renew)


@dataclass
class PaymentOutcome:
    client_id: int
    duplicate: bool
    wallet_balance: Decimal
    renewal: Optional[RenewalOutcome] = None


@dataclass
class TransitionOutcome:
    client_id: int
    previous_status: ClientStatus
    status: ClientStatus
    sync: Optional[SyncResult] = None
    renewal: Optional[RenewalOutcome] = None


@dataclass
class PackageUpdateOutcome:
    package: ServicePackage
    resynced: List[SyncResult] = field(default_factory=list)


class BillingService:

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NetworkSyncDispatcher,
        notifier: NotificationEmitter,
        locks: ClientLockRegistry,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.locks = locks
        self.settings = settings or get_settings()

    # ================================================================
    # HELPERS
    # ================================================================

    async def _load_client(self, client_id: int, tenant_id: Optional[int] = None) -> Client:
        """Relee al cliente descartando lo que haya en el identity map."""
        q = (
            select(Client)
            .where(Client.id == client_id, Client.is_active == True)
            .with_for_update(of=Client)
            .execution_options(populate_existing=True)
        )
        if tenant_id is not None:
            q = q.where(Client.tenant_id == tenant_id)
        client = (await self.db.execute(q)).scalar_one_or_none()
        if not client:
            raise ClientNotFound(f"Cliente {client_id} no encontrado")
        return client

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrentModification("El cliente fue modificado por otro proceso")

    def _notify(self, client: Client, event: NotificationEvent, **data: Any) -> None:
        data.setdefault("name", client.name)
        data.setdefault("wallet_balance", str(client.wallet_balance))
        if client.subscription_end_date:
            data.setdefault("subscription_end_date", client.subscription_end_date.isoformat())
        self.notifier.emit(client.id, event, data)

    async def _dispatch(self, client: Client, action: Optional[SyncAction], source: str, now: datetime) -> Optional[SyncResult]:
        if action is None:
            return None
        return await self.dispatcher.dispatch(self.db, client, action, source=source, now=now)

    # ================================================================
    # RENOVACIÓN
    # ================================================================

    async def evaluate_renewal(
        self,
        client_id: int,
        force: bool = False,
        now: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> RenewalOutcome:
        now = now or utcnow()
        async with self.locks.hold(client_id):
            return await self.evaluate_renewal_locked(client_id, force=force, now=now, tenant_id=tenant_id)

    async def evaluate_renewal_locked(
        self,
        client_id: int,
        force: bool = False,
        now: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> RenewalOutcome:
        """Un conflicto de versión se reintenta una vez; si persiste se reporta Hold."""
        now = now or utcnow()
        for attempt in (1, 2):
            try:
                return await self._apply_renewal(client_id, force, now, tenant_id)
            except (ConcurrentModification, StaleDataError):
                await self.db.rollback()
                logger.warning(f"Conflicto de concurrencia renovando cliente {client_id} (intento {attempt})")
        return RenewalOutcome(client_id, renewal.Hold("Conflicto de concurrencia, se reintentará"))

    async def _apply_renewal(
        self, client_id: int, force: bool, now: datetime, tenant_id: Optional[int]
    ) -> RenewalOutcome:
        client = await self._load_client(client_id, tenant_id)
        decision = renewal.evaluate(client, now, force=force, window_hours=self.settings.RENEWAL_WINDOW_HOURS)

        if isinstance(decision, renewal.Renew):
            previous_end = client.subscription_end_date
            try:
                await ledger.debit(
                    self.db, client, decision.amount,
                    reference=f"renewal:{client.id}:{decision.new_end_date:%Y%m%d}",
                    description=f"Renovación {client.subscription_type.value} ({decision.period_days} días)",
                )
            except InsufficientFundsError:
                status = client.status
                await self.db.rollback()
                logger.warning(f"Cargo de renovación rechazado para cliente {client_id}; se pospone")
                return RenewalOutcome(client_id, renewal.Hold("El cargo falló por saldo concurrente"), status)

            client.subscription_start_date = max(now, previous_end) if previous_end else now
            client.subscription_end_date = decision.new_end_date
            client.top_up_reminder_for = None
            action = lifecycle.apply_event(
                client, LifecycleEvent.SERVICE_RENEWED, now,
                reason="Renovación automática desde monedero",
                grace_days=self.settings.DISCONNECT_GRACE_DAYS,
            )
            await self._commit()
            logger.info(
                f"Cliente {client.id} renovado hasta {decision.new_end_date.isoformat()} "
                f"(cargo {decision.amount}, saldo {client.wallet_balance})"
            )
            sync = await self._dispatch(client, action, "renewal", now)
            self._notify(client, NotificationEvent.RENEWAL_SUCCESS,
                         amount=str(decision.amount), period_days=decision.period_days)
            return RenewalOutcome(client_id, decision, client.status, sync)

        if isinstance(decision, renewal.InsufficientFunds):
            if decision.expired and client.status == ClientStatus.ACTIVE:
                action = lifecycle.apply_event(
                    client, LifecycleEvent.SUSPEND, now,
                    reason=f"Suscripción vencida, faltan {decision.shortfall} para renovar",
                    grace_days=self.settings.DISCONNECT_GRACE_DAYS,
                )
                await self._commit()
                logger.info(f"Cliente {client.id} suspendido por saldo insuficiente (faltan {decision.shortfall})")
                sync = await self._dispatch(client, action, "renewal", now)
                self._notify(client, NotificationEvent.SERVICE_SUSPENDED, shortfall=str(decision.shortfall))
                return RenewalOutcome(client_id, decision, client.status, sync)

            if (not decision.expired and client.subscription_end_date is not None
                    and client.top_up_reminder_for != client.subscription_end_date):
                client.top_up_reminder_for = client.subscription_end_date
                await self._commit()
                self._notify(client, NotificationEvent.TOP_UP_REMINDER, shortfall=str(decision.shortfall))
                return RenewalOutcome(client_id, decision, client.status)

        status = client.status
        await self.db.rollback()
        return RenewalOutcome(client_id, decision, status)

    # ================================================================
    # PAGOS Y MONEDERO
    # ================================================================

    async def process_payment_confirmation(
        self,
        client_id: int,
        amount: Decimal,
        reference_number: Optional[str],
        method: PaymentMethod = PaymentMethod.MPESA,
        now: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> PaymentOutcome:
        """
        Pago confirmado por la pasarela: abona al monedero y evalúa renovación.
        Un reference_number repetido se confirma sin volver a abonar.
        """
        return await self._fund_and_evaluate(
            client_id, amount, reference_number, method, now, tenant_id, is_payment=True,
        )

    async def credit_wallet(
        self,
        client_id: int,
        amount: Decimal,
        method: PaymentMethod = PaymentMethod.CASH,
        reference_number: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> PaymentOutcome:
        """Abono manual (efectivo, banco) registrado por un operador."""
        return await self._fund_and_evaluate(
            client_id, amount, reference_number, method, now, tenant_id,
            is_payment=False, description=description,
        )

    async def _fund_and_evaluate(
        self,
        client_id: int,
        amount: Decimal,
        reference_number: Optional[str],
        method: PaymentMethod,
        now: Optional[datetime],
        tenant_id: Optional[int],
        is_payment: bool,
        description: Optional[str] = None,
    ) -> PaymentOutcome:
        now = now or utcnow()
        async with self.locks.hold(client_id):
            for attempt in (1, 2):
                try:
                    duplicate = await self._record_funds(
                        client_id, amount, reference_number, method, tenant_id, is_payment, description,
                    )
                    break
                except (ConcurrentModification, StaleDataError):
                    await self.db.rollback()
                    if attempt == 2:
                        raise ConcurrentModification(f"Cliente {client_id} modificado por otro proceso; reintente el abono")
                    logger.warning(f"Conflicto de concurrencia abonando a cliente {client_id}; se reintenta")

            if duplicate is not None:
                return PaymentOutcome(client_id, duplicate=True, wallet_balance=duplicate)

            outcome = await self.evaluate_renewal_locked(client_id, now=now, tenant_id=tenant_id)
            balance = await self._current_balance(client_id)
            return PaymentOutcome(client_id, duplicate=False, wallet_balance=balance, renewal=outcome)

    async def _record_funds(
        self,
        client_id: int,
        amount: Decimal,
        reference_number: Optional[str],
        method: PaymentMethod,
        tenant_id: Optional[int],
        is_payment: bool,
        description: Optional[str],
    ) -> Optional[Decimal]:
        """Abona y confirma. Si la referencia ya existe no abona y retorna el saldo vigente."""
        client = await self._load_client(client_id, tenant_id)

        # No duplicar pagos
        if reference_number:
            existing = await ledger.find_by_reference(self.db, client.tenant_id, reference_number)
            if existing:
                balance = client.wallet_balance
                await self.db.rollback()
                logger.info(f"Pago {reference_number} ya registrado para cliente {client_id}; se ignora")
                return balance

        record = ledger.record_payment if is_payment else ledger.credit
        await record(self.db, client, amount, reference=reference_number,
                     payment_method=method, description=description)
        await self._commit()
        self._notify(client, NotificationEvent.PAYMENT_RECEIVED,
                     amount=str(amount), reference=reference_number)
        return None

    async def _current_balance(self, client_id: int) -> Decimal:
        cents = await self.db.scalar(select(Client.wallet_balance_cents).where(Client.id == client_id))
        return Decimal(cents or 0) / 100

    async def reconcile(self, client_id: int, tenant_id: Optional[int] = None) -> ledger.Reconciliation:
        client = await self._load_client(client_id, tenant_id)
        return await ledger.reconcile(self.db, client)

    # ================================================================
    # ACCIONES ADMINISTRATIVAS
    # ================================================================

    async def apply_admin_action(
        self,
        client_id: int,
        target_status: ClientStatus,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> TransitionOutcome:
        """
        Lleva al cliente al estado pedido por un operador.
        Activar sin suscripción vigente fuerza una renovación desde el monedero.
        """
        now = now or utcnow()
        async with self.locks.hold(client_id):
            client = await self._load_client(client_id, tenant_id)
            previous = client.status
            if previous == target_status:
                raise InvalidTransition(f"El cliente ya está en estado '{target_status.value}'")
            event = lifecycle.event_for_target(previous, target_status)

            has_valid_subscription = (
                client.subscription_end_date is not None and client.subscription_end_date > now
            )
            if target_status == ClientStatus.ACTIVE and not has_valid_subscription:
                outcome = await self.evaluate_renewal_locked(client_id, force=True, now=now, tenant_id=tenant_id)
                decision = outcome.decision
                if isinstance(decision, renewal.InsufficientFunds):
                    raise InsufficientFundsError(
                        f"No se puede activar: faltan {decision.shortfall} en el monedero",
                        shortfall=decision.shortfall,
                    )
                if isinstance(decision, renewal.Hold):
                    raise ConcurrentModification(decision.reason)
                return TransitionOutcome(client_id, previous, outcome.status, outcome.sync, outcome)

            action = lifecycle.apply_event(
                client, event, now, reason=reason,
                grace_days=self.settings.DISCONNECT_GRACE_DAYS,
            )
            await self._commit()
            logger.info(f"Cliente {client.id}: {previous.value} → {client.status.value} ({event.value})")

            sync = await self._dispatch(client, action, "transition", now)
            if client.status == ClientStatus.SUSPENDED:
                self._notify(client, NotificationEvent.SERVICE_SUSPENDED, reason=reason)
            elif client.status == ClientStatus.DISCONNECTED:
                self._notify(client, NotificationEvent.SERVICE_DISCONNECTED, reason=reason)
            elif client.status == ClientStatus.ACTIVE:
                self._notify(client, NotificationEvent.SERVICE_ACTIVATED)
            return TransitionOutcome(client_id, previous, client.status, sync)

    async def renew_now(
        self, client_id: int, now: Optional[datetime] = None, tenant_id: Optional[int] = None
    ) -> RenewalOutcome:
        """Renovación forzada: ignora la ventana de 24 h."""
        return await self.evaluate_renewal(client_id, force=True, now=now, tenant_id=tenant_id)

    # ================================================================
    # SINCRONIZACIÓN DE RED
    # ================================================================

    async def resync_client(
        self, client_id: int, now: Optional[datetime] = None, tenant_id: Optional[int] = None
    ) -> SyncResult:
        """Reenvío manual del comando que corresponde al estado actual."""
        now = now or utcnow()
        async with self.locks.hold(client_id):
            client = await self._load_client(client_id, tenant_id)
            action = lifecycle.sync_action_for(client.status) or lifecycle.outstanding_action(client)
            if action is None:
                raise InvalidTransition(f"Un cliente en estado '{client.status.value}' no tiene comando de red")
            lifecycle.enqueue_sync(client, action, now)
            await self._commit()
            return await self.dispatcher.dispatch(self.db, client, action, source="manual", now=now)

    async def retry_sync_locked(self, client_id: int, now: Optional[datetime] = None) -> Optional[SyncResult]:
        """Reintento del scheduler. Un cliente que ya no existe o ya no aplica es no-op."""
        now = now or utcnow()
        try:
            client = await self._load_client(client_id)
        except ClientNotFound:
            return None
        if client.radius_sync_status == RadiusSyncStatus.SYNCED:
            await self.db.rollback()
            return None
        if (client.radius_sync_attempts or 0) >= self.settings.SYNC_MAX_RETRIES:
            await self.db.rollback()
            return None
        if client.next_radius_sync_at is not None and client.next_radius_sync_at > now:
            await self.db.rollback()
            return None
        action = lifecycle.sync_action_for(client.status) or lifecycle.outstanding_action(client)
        if action is None:
            client.radius_sync_status = RadiusSyncStatus.SYNCED
            await self._commit()
            return None
        return await self.dispatcher.dispatch(self.db, client, action, source="retry", now=now)

    async def mark_sync_timeout_locked(self, client_id: int, now: Optional[datetime] = None) -> None:
        """La operación del cliente excedió su tiempo en el tick: se marca fallida."""
        now = now or utcnow()
        await self.db.rollback()
        try:
            client = await self._load_client(client_id)
        except ClientNotFound:
            return
        attempts = (client.radius_sync_attempts or 0) + 1
        delay = backoff_seconds(attempts, self.settings.SYNC_BACKOFF_BASE_SECONDS, self.settings.SYNC_BACKOFF_MAX_SECONDS)
        client.radius_sync_status = RadiusSyncStatus.FAILED
        client.radius_sync_attempts = attempts
        client.next_radius_sync_at = now + timedelta(seconds=delay)
        client.last_radius_sync_error = "Tiempo de operación excedido en el scheduler"
        await self._commit()

    async def update_package(
        self,
        package_id: int,
        changes: Dict[str, Any],
        tenant_id: int,
        now: Optional[datetime] = None,
    ) -> PackageUpdateOutcome:
        """
        Actualiza el paquete. Si cambian atributos de red, en el mismo commit
        cada cliente activo del paquete queda con un ensure_connected pendiente;
        después se intenta el envío. Lo que no se envíe aquí lo toma sync_retry.
        """
        now = now or utcnow()
        for attempt in (1, 2):
            try:
                package, client_ids = await self._apply_package_changes(package_id, changes, tenant_id, now)
                break
            except (ConcurrentModification, StaleDataError):
                await self.db.rollback()
                if attempt == 2:
                    raise ConcurrentModification(f"Paquete {package_id}: clientes modificados por otro proceso")
                logger.warning(f"Conflicto de concurrencia actualizando paquete {package_id}; se reintenta")

        outcome = PackageUpdateOutcome(package=package)
        if client_ids:
            outcome.resynced = await self.resync_package(package_id, client_ids, now=now)
            # El rollback del envío expiró el paquete
            await self.db.refresh(package)
        return outcome

    async def _apply_package_changes(
        self, package_id: int, changes: Dict[str, Any], tenant_id: int, now: datetime
    ) -> Tuple[ServicePackage, List[int]]:
        package = await self.db.get(ServicePackage, package_id, populate_existing=True)
        if not package or package.tenant_id != tenant_id:
            raise PackageNotFound(f"Paquete {package_id} no encontrado")

        network_changed = any(
            key in PACKAGE_SYNC_FIELDS and getattr(package, key) != value
            for key, value in changes.items()
        )
        for key, value in changes.items():
            setattr(package, key, value)

        client_ids: List[int] = []
        if network_changed:
            clients = (await self.db.execute(
                select(Client).where(
                    Client.service_package_id == package_id,
                    Client.status == ClientStatus.ACTIVE,
                    Client.is_active == True,
                ).order_by(Client.id).execution_options(populate_existing=True)
            )).scalars().all()
            for client in clients:
                lifecycle.enqueue_sync(client, SyncAction.ENSURE_CONNECTED, now)
                client_ids.append(client.id)
        await self._commit()
        if client_ids:
            logger.info(f"Paquete {package_id}: ensure_connected encolado para {len(client_ids)} clientes")
        return package, client_ids

    async def resync_package(
        self, package_id: int, client_ids: List[int], now: Optional[datetime] = None
    ) -> List[SyncResult]:
        """
        Envío best-effort de los ensure_connected ya encolados. Un cliente
        ocupado o cuya acción pendiente ya cambió se deja para sync_retry.
        """
        now = now or utcnow()
        results = []
        for client_id in client_ids:
            async with self.locks.try_hold(client_id) as acquired:
                if not acquired:
                    logger.info(f"Cliente {client_id} ocupado; su sincronización queda pendiente")
                    continue
                try:
                    client = await self._load_client(client_id)
                except ClientNotFound:
                    continue
                if (client.status != ClientStatus.ACTIVE
                        or client.service_package_id != package_id
                        or client.radius_sync_status != RadiusSyncStatus.PENDING
                        or client.radius_sync_action != SyncAction.ENSURE_CONNECTED.value):
                    await self.db.rollback()
                    continue
                results.append(await self.dispatcher.dispatch(
                    self.db, client, SyncAction.ENSURE_CONNECTED, source="cascade", now=now,
                ))
        logger.info(f"Paquete {package_id}: {len(results)} de {len(client_ids)} clientes re-sincronizados")
        return results

    async def handle_enforcement_callback(
        self,
        client_id: Optional[int],
        username: Optional[str],
        action: SyncAction,
        success: bool,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Confirmación asíncrona del punto de enforcement.
        Sólo actualiza los campos de sincronización; nunca el estado de servicio.
        """
        now = now or utcnow()
        if client_id is None:
            client_id = await self.db.scalar(select(Client.id).where(Client.radius_username == username))
            if client_id is None:
                raise ClientNotFound(f"Usuario RADIUS '{username}' no encontrado")

        async with self.locks.hold(client_id):
            client = await self._load_client(client_id)
            if client.radius_sync_action and client.radius_sync_action != action.value:
                current, pending_action = client.radius_sync_status, client.radius_sync_action
                await self.db.rollback()
                logger.info(
                    f"Callback {action.value} de cliente {client_id} ignorado: "
                    f"la acción vigente es {pending_action}"
                )
                return {"client_id": client_id, "radius_sync_status": current, "ignored": True}

            if success:
                client.radius_sync_status = RadiusSyncStatus.SYNCED
                client.last_radius_sync_at = now
                client.radius_sync_attempts = 0
                client.next_radius_sync_at = None
                client.last_radius_sync_error = None
            else:
                attempts = (client.radius_sync_attempts or 0) + 1
                delay = backoff_seconds(attempts, self.settings.SYNC_BACKOFF_BASE_SECONDS,
                                        self.settings.SYNC_BACKOFF_MAX_SECONDS)
                client.radius_sync_status = RadiusSyncStatus.FAILED
                client.radius_sync_attempts = attempts
                client.next_radius_sync_at = now + timedelta(seconds=delay)
                client.last_radius_sync_error = error or "El punto de enforcement reportó un fallo"
            await self._commit()
            return {"client_id": client_id, "radius_sync_status": client.radius_sync_status, "ignored": False}

    # ================================================================
    # SCHEDULER
    # ================================================================

    async def sweep_client_locked(self, client_id: int, now: Optional[datetime] = None) -> Optional[RenewalOutcome]:
        """
        Trabajo del barrido para un cliente: evalúa renovación y, si sigue
        suspendido con la fecha de desconexión vencida, lo desconecta.
        """
        now = now or utcnow()
        try:
            outcome = await self.evaluate_renewal_locked(client_id, now=now)
        except ClientNotFound:
            return None

        if outcome.status == ClientStatus.SUSPENDED:
            await self._disconnect_if_due(client_id, now)
        return outcome

    async def _disconnect_if_due(self, client_id: int, now: datetime) -> None:
        try:
            client = await self._load_client(client_id)
        except ClientNotFound:
            return
        due = client.disconnection_scheduled_at
        if client.status != ClientStatus.SUSPENDED or due is None or due > now:
            await self.db.rollback()
            return
        action = lifecycle.apply_event(
            client, LifecycleEvent.DISCONNECT, now,
            reason="Periodo de gracia vencido sin renovación",
        )
        await self._commit()
        logger.info(f"Cliente {client.id} desconectado por periodo de gracia vencido")
        await self._dispatch(client, action, "grace", now)
        self._notify(client, NotificationEvent.SERVICE_DISCONNECTED)
