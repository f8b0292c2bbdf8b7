"""
NetBilling - Models
Importa todos los modelos para que SQLAlchemy los registre.
"""
# Base
from netbilling.models.base import TenantBase, TimestampMixin, UTCDateTime

# Core
from netbilling.models.tenant import Tenant, TenantStatus
from netbilling.models.user import User, UserRole

# Clientes y paquetes
from netbilling.models.client import Client, ClientStatus, SubscriptionType, RadiusSyncStatus
from netbilling.models.plan import ServicePackage

# Monedero
from netbilling.models.wallet import WalletTransaction, TransactionType, PaymentMethod

# Sincronización de red
from netbilling.models.sync import SyncRecord, SyncAction, SyncOutcome

__all__ = [
    # Base
    "TenantBase", "TimestampMixin", "UTCDateTime",
    # Core
    "Tenant", "TenantStatus",
    "User", "UserRole",
    # Clientes
    "Client", "ClientStatus", "SubscriptionType", "RadiusSyncStatus",
    "ServicePackage",
    # Monedero
    "WalletTransaction", "TransactionType", "PaymentMethod",
    # Sincronización
    "SyncRecord", "SyncAction", "SyncOutcome",
]
