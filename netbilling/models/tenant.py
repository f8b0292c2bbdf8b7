"""
NetBilling - Modelo Tenant (ISPs)
Cada ISP que opera sobre la plataforma es un tenant.
"""
from sqlalchemy import Column, Integer, String, Boolean, Enum
from sqlalchemy.orm import relationship
from netbilling.database import Base
from netbilling.models.base import TimestampMixin
import enum


class TenantStatus(str, enum.Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class Tenant(Base, TimestampMixin):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)

    status = Column(Enum(TenantStatus), default=TenantStatus.ACTIVE, nullable=False)
    currency = Column(String(3), default="KES")
    is_active = Column(Boolean, default=True)

    # --- Relationships ---
    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")
    clients = relationship("Client", back_populates="tenant", cascade="all, delete-orphan")
    service_packages = relationship("ServicePackage", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant {self.slug}: {self.name}>"
