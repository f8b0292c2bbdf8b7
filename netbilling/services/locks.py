"""
NetBilling - Exclusión mutua por cliente
Un asyncio.Lock por client_id dentro del proceso. Los triggers (webhook,
scheduler, acciones admin) de un mismo cliente se serializan aquí; entre
procesos protege la columna version_id del cliente.

El lock de un cliente sólo vive mientras alguien lo tiene o lo espera.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from netbilling.exceptions import ConcurrentModification


class ClientLockRegistry:
    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, client_id: int) -> asyncio.Lock:
        lock = self._locks.get(client_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[client_id] = lock
        self._users[client_id] = self._users.get(client_id, 0) + 1
        return lock

    def _checkin(self, client_id: int) -> None:
        remaining = self._users[client_id] - 1
        if remaining:
            self._users[client_id] = remaining
        else:
            del self._users[client_id]
            del self._locks[client_id]

    def is_locked(self, client_id: int) -> bool:
        lock = self._locks.get(client_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, client_id: int, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Espera el lock hasta `timeout`; si no se obtiene lanza ConcurrentModification."""
        lock = self._checkout(client_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout if timeout is not None else self.timeout)
            except asyncio.TimeoutError:
                raise ConcurrentModification(f"Cliente {client_id} ocupado por otra operación")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(client_id)

    @asynccontextmanager
    async def try_hold(self, client_id: int) -> AsyncIterator[bool]:
        """Intento sin espera (scheduler, cascada): entrega False si otro ya tiene el lock."""
        if self.is_locked(client_id):
            yield False
            return
        lock = self._checkout(client_id)
        try:
            await lock.acquire()
            try:
                yield True
            finally:
                lock.release()
        finally:
            self._checkin(client_id)
