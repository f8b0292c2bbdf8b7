"""
NetBilling - Registro de sincronización
Un renglón por cada intento de envío al punto de enforcement.
"""
from sqlalchemy import Column, Integer, String, Enum, Text, JSON, ForeignKey
from netbilling.models.base import TenantBase, UTCDateTime
import enum


class SyncAction(str, enum.Enum):
    ENSURE_CONNECTED = "ensure_connected"
    SUSPEND = "suspend"
    DISCONNECT = "disconnect"


class SyncOutcome(str, enum.Enum):
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncRecord(TenantBase):
    __tablename__ = "sync_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)

    action = Column(Enum(SyncAction), nullable=False)
    outcome = Column(Enum(SyncOutcome), default=SyncOutcome.IN_FLIGHT, nullable=False)
    attempt = Column(Integer, default=0, nullable=False)
    http_status = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    source = Column(String(30), nullable=True)      # transition, retry, cascade, manual
    completed_at = Column(UTCDateTime(), nullable=True)

    def __repr__(self):
        return f"<SyncRecord {self.action.value} client={self.client_id} {self.outcome.value}>"
