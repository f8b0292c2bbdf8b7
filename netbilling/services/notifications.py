"""
NetBilling - Notificaciones best-effort
Publica eventos del cliente (renovación, suspensión, recordatorio de recarga)
a un webhook externo que se encarga de SMS / correo. Fire-and-forget:
un fallo se registra en el log y nunca interrumpe la operación de facturación.
"""
import asyncio
import enum
import httpx
import logging
from typing import Any, Dict, Optional, Set

logger = logging.getLogger("notifications")


class NotificationEvent(str, enum.Enum):
    RENEWAL_SUCCESS = "renewal_success"
    PAYMENT_RECEIVED = "payment_received"
    SERVICE_ACTIVATED = "service_activated"
    SERVICE_SUSPENDED = "service_suspended"
    SERVICE_DISCONNECTED = "service_disconnected"
    TOP_UP_REMINDER = "top_up_reminder"


class NotificationEmitter:

    def __init__(
        self,
        url: Optional[str],
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = http_client
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, client_id: int, event: NotificationEvent, data: Optional[Dict[str, Any]] = None) -> None:
        """Agenda el envío y regresa de inmediato."""
        if not self.url:
            logger.debug(f"Notificación {event.value} cliente {client_id} omitida (sin webhook)")
            return
        payload = {"clientId": client_id, "eventType": event.value, "data": data or {}}
        task = asyncio.create_task(self._send(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, payload: Dict[str, Any]) -> None:
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=payload, timeout=self.timeout)
            if not response.is_success:
                logger.warning(
                    f"Webhook de notificaciones respondió {response.status_code} "
                    f"para {payload['eventType']} cliente {payload['clientId']}"
                )
        except httpx.HTTPError as e:
            logger.warning(f"No se pudo notificar {payload['eventType']} cliente {payload['clientId']}: {e}")
        except Exception:
            logger.exception(f"Error inesperado notificando {payload['eventType']}")

    async def drain(self) -> None:
        """Espera a que terminen los envíos pendientes (shutdown, pruebas)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()
