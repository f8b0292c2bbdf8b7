"""
NetBilling - Modelo User
Operadores de cada ISP. Los clientes finales no inician sesión aquí:
el acceso de red lo dan sus credenciales RADIUS.
"""
from sqlalchemy import Column, Integer, String, Boolean, Enum
from sqlalchemy.orm import relationship
from netbilling.models.base import TenantBase, UTCDateTime
import enum


class UserRole(str, enum.Enum):
    ADMIN = "admin"               # Dueño del ISP: paquetes y todo lo demás
    BILLING = "billing"           # Abonos, renovaciones y cambios de estado
    AGENT = "agent"               # Soporte: solo consulta


class User(TenantBase):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), nullable=False)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(200), nullable=False)
    role = Column(Enum(UserRole), default=UserRole.AGENT, nullable=False)
    is_active = Column(Boolean, default=True)
    last_login_at = Column(UTCDateTime(), nullable=True)

    # Relationships
    tenant = relationship("Tenant", back_populates="users")

    def __repr__(self):
        return f"<User {self.email} ({self.role.value})>"
