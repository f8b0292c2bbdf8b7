"""
NetBilling - Modelo base multi-tenant
Todos los modelos que pertenecen a un tenant heredan de TenantBase.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, DateTime, func, ForeignKey
from sqlalchemy.orm import declared_attr
from sqlalchemy.types import TypeDecorator
from netbilling.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Fecha/hora siempre en UTC.
    Se guarda sin zona (SQLite la pierde) y se devuelve con tzinfo=UTC.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Se esperaba datetime con zona horaria")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class TimestampMixin:
    """Agrega created_at y updated_at a cualquier modelo."""
    created_at = Column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)


class TenantBase(Base, TimestampMixin):
    """
    Clase base para todas las tablas que pertenecen a un tenant.
    Automáticamente agrega tenant_id como FK.
    """
    __abstract__ = True

    @declared_attr
    def tenant_id(cls):
        return Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
