"""
NetBilling - Scheduler
Dos jobs periódicos sobre el event loop de la app (APScheduler):

  - renewal_sweep: clientes activos/suspendidos vencidos o por vencer
    (renovación o suspensión) y suspendidos con desconexión programada vencida.
  - sync_retry: clientes con sincronización pendiente o fallida cuyo
    backoff ya se cumplió.

Cada cliente se procesa en su propia sesión, en paralelo (acotado por
SCHEDULER_MAX_WORKERS) y con tiempo máximo CLIENT_WORK_TIMEOUT_SECONDS.
Un cliente cuyo lock está tomado se salta en ese tick.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from netbilling.config import Settings, get_settings
from netbilling.models.client import Client, ClientStatus, RadiusSyncStatus
from netbilling.services.billing_service import BillingService
from netbilling.services.locks import ClientLockRegistry
from netbilling.services.network_sync import NetworkSyncDispatcher
from netbilling.services.notifications import NotificationEmitter

logger = logging.getLogger("scheduler")

ClientWork = Callable[[BillingService, int, datetime], Awaitable[object]]


def job_listener(event):
    """Registra en el log el resultado de cada ejecución de job."""
    if event.exception:
        logger.error(f"Job {event.job_id} falló: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} ejecutado exitosamente")


class SchedulerContext:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: NetworkSyncDispatcher,
        notifier: NotificationEmitter,
        locks: ClientLockRegistry,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.locks = locks
        self.settings = settings or get_settings()
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,          # Si se perdieron ejecuciones, solo ejecuta una vez
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone=timezone.utc,
        )
        self._scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
        self._scheduler.add_job(
            self.run_renewal_sweep,
            trigger=IntervalTrigger(seconds=self.settings.RENEWAL_SWEEP_SECONDS),
            id="renewal_sweep",
            name="Barrido de renovaciones",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.run_sync_retry,
            trigger=IntervalTrigger(seconds=self.settings.SYNC_RETRY_SECONDS),
            id="sync_retry",
            name="Reintento de sincronización",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            f"Scheduler iniciado: renovaciones cada {self.settings.RENEWAL_SWEEP_SECONDS}s, "
            f"reintentos cada {self.settings.SYNC_RETRY_SECONDS}s"
        )

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler detenido")
        self._scheduler = None

    def _service(self, db: AsyncSession) -> BillingService:
        return BillingService(db, self.dispatcher, self.notifier, self.locks, self.settings)

    # ================================================================
    # SELECCIÓN DE CANDIDATOS
    # ================================================================

    async def renewal_candidates(self, now: datetime) -> List[int]:
        horizon = now + timedelta(hours=self.settings.RENEWAL_WINDOW_HOURS)
        due = or_(Client.subscription_end_date.is_(None), Client.subscription_end_date <= horizon)
        q = (
            select(Client.id)
            .where(
                Client.is_active == True,
                or_(
                    and_(Client.status == ClientStatus.ACTIVE, due),
                    and_(
                        Client.status == ClientStatus.SUSPENDED, due,
                        Client.wallet_balance_cents >= Client.monthly_rate_cents,
                    ),
                    and_(
                        Client.status == ClientStatus.SUSPENDED,
                        Client.disconnection_scheduled_at.is_not(None),
                        Client.disconnection_scheduled_at <= now,
                    ),
                ),
            )
            .order_by(Client.id)
        )
        async with self.session_factory() as db:
            return list((await db.execute(q)).scalars().all())

    async def retry_candidates(self, now: datetime) -> List[int]:
        q = (
            select(Client.id)
            .where(
                Client.is_active == True,
                Client.radius_sync_status.in_([RadiusSyncStatus.PENDING, RadiusSyncStatus.FAILED]),
                Client.radius_sync_attempts < self.settings.SYNC_MAX_RETRIES,
                or_(Client.next_radius_sync_at.is_(None), Client.next_radius_sync_at <= now),
            )
            .order_by(Client.id)
        )
        async with self.session_factory() as db:
            return list((await db.execute(q)).scalars().all())

    # ================================================================
    # TICKS
    # ================================================================

    async def run_renewal_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        client_ids = await self.renewal_candidates(now)
        stats = await self._fan_out(client_ids, self._sweep_one, now)
        logger.info(f"Barrido de renovaciones: {stats}")
        return stats

    async def run_sync_retry(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        client_ids = await self.retry_candidates(now)
        stats = await self._fan_out(client_ids, self._retry_one, now)
        if client_ids:
            logger.info(f"Reintentos de sincronización: {stats}")
        return stats

    @staticmethod
    async def _sweep_one(service: BillingService, client_id: int, now: datetime):
        return await service.sweep_client_locked(client_id, now)

    @staticmethod
    async def _retry_one(service: BillingService, client_id: int, now: datetime):
        return await service.retry_sync_locked(client_id, now)

    async def _fan_out(self, client_ids: List[int], work: ClientWork, now: datetime) -> Dict[str, int]:
        stats = {"candidates": len(client_ids), "processed": 0, "skipped": 0, "failed": 0, "timed_out": 0}
        semaphore = asyncio.Semaphore(max(1, self.settings.SCHEDULER_MAX_WORKERS))
        await asyncio.gather(*(
            self._run_one(client_id, work, now, semaphore, stats) for client_id in client_ids
        ))
        return stats

    async def _run_one(
        self,
        client_id: int,
        work: ClientWork,
        now: datetime,
        semaphore: asyncio.Semaphore,
        stats: Dict[str, int],
    ) -> None:
        async with semaphore:
            async with self.locks.try_hold(client_id) as acquired:
                if not acquired:
                    stats["skipped"] += 1
                    logger.debug(f"Cliente {client_id} ocupado; se salta en este tick")
                    return

                timed_out = False
                async with self.session_factory() as db:
                    try:
                        await asyncio.wait_for(
                            work(self._service(db), client_id, now),
                            timeout=self.settings.CLIENT_WORK_TIMEOUT_SECONDS,
                        )
                        stats["processed"] += 1
                    except asyncio.TimeoutError:
                        timed_out = True
                        stats["timed_out"] += 1
                        logger.warning(f"Cliente {client_id}: tiempo excedido, se abandona en este tick")
                    except Exception:
                        stats["failed"] += 1
                        logger.exception(f"Cliente {client_id}: error procesando en el scheduler")

                if timed_out:
                    async with self.session_factory() as db:
                        try:
                            await self._service(db).mark_sync_timeout_locked(client_id, now)
                        except Exception:
                            logger.exception(f"Cliente {client_id}: no se pudo marcar el timeout")
