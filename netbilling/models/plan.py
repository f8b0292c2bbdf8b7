"""
NetBilling - Paquetes de servicio (perfil de ancho de banda)
Cambiar la velocidad de un paquete re-sincroniza a sus clientes activos.
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Boolean, BigInteger
from sqlalchemy.orm import relationship
from netbilling.models.base import TenantBase


class ServicePackage(TenantBase):
    __tablename__ = "service_packages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)

    # --- Velocidad en Mbps ---
    download_speed = Column(Integer, nullable=False)
    upload_speed = Column(Integer, nullable=False)

    # --- Atributos RADIUS ---
    session_timeout = Column(Integer, nullable=True)           # Segundos
    idle_timeout = Column(Integer, nullable=True)
    groupname = Column(String(100), nullable=True)             # ej: "premium-10m"

    monthly_rate_cents = Column(BigInteger, default=0, nullable=False)
    is_active = Column(Boolean, default=True)

    # --- Relationships ---
    tenant = relationship("Tenant", back_populates="service_packages")
    clients = relationship("Client", back_populates="service_package")

    @property
    def monthly_rate(self) -> Decimal:
        return Decimal(self.monthly_rate_cents or 0) / 100

    def __repr__(self):
        return f"<ServicePackage {self.name} {self.download_speed}/{self.upload_speed} Mbps>"
