"""
NetBilling - Dispatcher de sincronización de red
Traduce el estado del cliente en un comando para el punto de enforcement
(RADIUS / NAS) y registra el resultado.

El payload se arma en el momento del envío con el paquete vigente del
cliente: velocidad Mbps × 1024 = kbps. Sin paquete se usan 5120/512 kbps.

Un fallo de red nunca toca estado, saldo ni fechas del cliente: sólo
marca radius_sync_status = failed y programa el siguiente reintento.
"""
import httpx
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from netbilling.config import Settings
from netbilling.exceptions import SyncFailed
from netbilling.models.client import Client, RadiusSyncStatus
from netbilling.models.plan import ServicePackage
from netbilling.models.sync import SyncRecord, SyncAction, SyncOutcome
from netbilling.services.lifecycle import ensure_radius_credentials

logger = logging.getLogger("network_sync")

WIRE_ACTION = {
    SyncAction.ENSURE_CONNECTED: "connect",
    SyncAction.SUSPEND: "suspend",
    SyncAction.DISCONNECT: "disconnect",
}

DEFAULT_DOWNLOAD_KBPS = 5120
DEFAULT_UPLOAD_KBPS = 512
DEFAULT_GROUP = "default"
SUSPENDED_GROUP = "suspended"


class EnforcementCommand(BaseModel):
    type: str = "client"
    action: str
    client_id: int
    tenant_id: int
    username: str
    password: Optional[str] = None
    groupname: str
    download_speed_kbps: int
    upload_speed_kbps: int
    session_timeout: Optional[int] = None
    idle_timeout: Optional[int] = None


@dataclass
class SyncResult:
    client_id: int
    action: SyncAction
    succeeded: bool
    record_id: Optional[int] = None
    http_status: Optional[int] = None
    error: Optional[str] = None


def build_command(client: Client, package: Optional[ServicePackage], action: SyncAction) -> EnforcementCommand:
    if package is not None:
        download = package.download_speed * 1024
        upload = package.upload_speed * 1024
        group = package.groupname or DEFAULT_GROUP
    else:
        download, upload, group = DEFAULT_DOWNLOAD_KBPS, DEFAULT_UPLOAD_KBPS, DEFAULT_GROUP

    if action == SyncAction.SUSPEND:
        group = SUSPENDED_GROUP

    return EnforcementCommand(
        action=WIRE_ACTION[action],
        client_id=client.id,
        tenant_id=client.tenant_id,
        username=client.radius_username,
        password=client.radius_password,
        groupname=group,
        download_speed_kbps=download,
        upload_speed_kbps=upload,
        session_timeout=package.session_timeout if package is not None else None,
        idle_timeout=package.idle_timeout if package is not None else None,
    )


def backoff_seconds(attempt: int, base: int, cap: int) -> int:
    """Backoff exponencial: base, 2·base, 4·base ... con tope `cap`."""
    if attempt < 1:
        return 0
    return min(base * 2 ** (attempt - 1), cap)


class NetworkSyncDispatcher:
    """
    Envía comandos al punto de enforcement por HTTP.
    Se puede inyectar un httpx.AsyncClient (pruebas, pool compartido).
    """

    def __init__(
        self,
        url: str,
        api_token: str = "",
        timeout: float = 8.0,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_base: int = 60,
        backoff_max: int = 3600,
    ):
        self.url = url
        self.api_token = api_token
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._client = http_client

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "NetworkSyncDispatcher":
        return cls(
            url=settings.ENFORCEMENT_URL,
            api_token=settings.ENFORCEMENT_API_TOKEN,
            timeout=settings.ENFORCEMENT_TIMEOUT_SECONDS,
            http_client=http_client,
            backoff_base=settings.SYNC_BACKOFF_BASE_SECONDS,
            backoff_max=settings.SYNC_BACKOFF_MAX_SECONDS,
        )

    async def send(self, command: EnforcementCommand) -> int:
        """POST del comando. Retorna el status HTTP o lanza SyncFailed."""
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        payload = command.model_dump()

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException:
            raise SyncFailed(f"Timeout ({self.timeout}s) al contactar el punto de enforcement")
        except httpx.HTTPError as e:
            raise SyncFailed(f"Error de red: {e}")

        if not response.is_success:
            raise SyncFailed(
                f"Enforcement respondió {response.status_code}: {response.text[:200]}",
                http_status=response.status_code,
            )
        return response.status_code

    async def dispatch(
        self,
        db: AsyncSession,
        client: Client,
        action: SyncAction,
        source: str = "transition",
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Envía `action` para el cliente y persiste el resultado (hace commit).
        Se llama siempre después del commit del cambio de estado.
        """
        now = now or datetime.now(timezone.utc)

        package = None
        if client.service_package_id:
            result = await db.execute(
                select(ServicePackage)
                .where(ServicePackage.id == client.service_package_id)
                .execution_options(populate_existing=True)
            )
            package = result.scalar_one_or_none()

        ensure_radius_credentials(client)
        command = build_command(client, package, action)

        record = SyncRecord(
            tenant_id=client.tenant_id,
            client_id=client.id,
            action=action,
            outcome=SyncOutcome.IN_FLIGHT,
            attempt=client.radius_sync_attempts or 0,
            payload=command.model_dump(exclude={"password"}),
            source=source,
        )
        client.radius_sync_action = action.value
        db.add(record)
        await db.commit()

        try:
            http_status = await self.send(command)
        except SyncFailed as e:
            finished = datetime.now(timezone.utc)
            attempts = (client.radius_sync_attempts or 0) + 1
            delay = backoff_seconds(attempts, self.backoff_base, self.backoff_max)
            client.radius_sync_status = RadiusSyncStatus.FAILED
            client.radius_sync_attempts = attempts
            client.next_radius_sync_at = now + timedelta(seconds=delay)
            client.last_radius_sync_error = e.message
            record.outcome = SyncOutcome.FAILED
            record.http_status = e.http_status
            record.error = e.message
            record.completed_at = finished
            await db.commit()
            logger.warning(
                f"Sync {action.value} cliente {client.id} falló (intento {attempts}, "
                f"reintento en {delay}s): {e.message}"
            )
            return SyncResult(client.id, action, False, record.id, e.http_status, e.message)

        finished = datetime.now(timezone.utc)
        client.radius_sync_status = RadiusSyncStatus.SYNCED
        client.last_radius_sync_at = finished
        client.radius_sync_attempts = 0
        client.next_radius_sync_at = None
        client.last_radius_sync_error = None
        record.outcome = SyncOutcome.SUCCEEDED
        record.http_status = http_status
        record.completed_at = finished
        await db.commit()
        logger.info(f"Sync {action.value} cliente {client.id} ({client.radius_username}) OK")
        return SyncResult(client.id, action, True, record.id, http_status)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
