"""
NetBilling - Modelo Client
Suscriptores de cada ISP con su monedero, suscripción e identidad RADIUS.
Los montos se guardan en centavos (enteros) y se exponen como Decimal.
"""
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Boolean, Enum, Text, BigInteger, ForeignKey
)
from sqlalchemy.orm import relationship
from netbilling.models.base import TenantBase, UTCDateTime
import enum


class ClientStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DISCONNECTED = "disconnected"
    REJECTED = "rejected"


class SubscriptionType(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class RadiusSyncStatus(str, enum.Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


class Client(TenantBase):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # --- Datos personales ---
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)

    # --- Monedero y suscripción ---
    wallet_balance_cents = Column(BigInteger, default=0, nullable=False)
    monthly_rate_cents = Column(BigInteger, nullable=False)
    subscription_type = Column(Enum(SubscriptionType), default=SubscriptionType.MONTHLY, nullable=False)
    subscription_start_date = Column(UTCDateTime(), nullable=True)
    subscription_end_date = Column(UTCDateTime(), nullable=True)   # None = nunca aprovisionado
    top_up_reminder_for = Column(UTCDateTime(), nullable=True)     # fin de periodo ya recordado

    # --- Estado ---
    status = Column(Enum(ClientStatus), default=ClientStatus.PENDING, nullable=False, index=True)
    status_reason = Column(Text, nullable=True)
    status_changed_at = Column(UTCDateTime(), nullable=True)
    is_active = Column(Boolean, default=True)

    # --- Identidad de red ---
    radius_username = Column(String(100), unique=True, nullable=True)
    radius_password = Column(String(100), nullable=True)
    service_package_id = Column(Integer, ForeignKey("service_packages.id"), nullable=True, index=True)

    # --- Sincronización con el punto de enforcement ---
    radius_sync_status = Column(Enum(RadiusSyncStatus), default=RadiusSyncStatus.SYNCED, nullable=False)
    radius_sync_action = Column(String(30), nullable=True)
    last_radius_sync_at = Column(UTCDateTime(), nullable=True)
    radius_sync_attempts = Column(Integer, default=0, nullable=False)
    next_radius_sync_at = Column(UTCDateTime(), nullable=True)
    last_radius_sync_error = Column(Text, nullable=True)
    disconnection_scheduled_at = Column(UTCDateTime(), nullable=True)

    # --- Control de concurrencia optimista ---
    version_id = Column(Integer, nullable=False, default=1)

    # --- Relationships ---
    tenant = relationship("Tenant", back_populates="clients")
    service_package = relationship("ServicePackage", back_populates="clients", lazy="selectin")
    wallet_transactions = relationship(
        "WalletTransaction", back_populates="client",
        cascade="all, delete-orphan", order_by="WalletTransaction.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def wallet_balance(self) -> Decimal:
        return Decimal(self.wallet_balance_cents or 0) / 100

    @property
    def monthly_rate(self) -> Decimal:
        return Decimal(self.monthly_rate_cents or 0) / 100

    def __repr__(self):
        return f"<Client {self.id}: {self.name} ({self.status.value})>"
