"""
NetBilling - Schemas: Clientes, suscripción y monedero
"""
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from netbilling.models.client import ClientStatus, SubscriptionType, RadiusSyncStatus
from netbilling.models.sync import SyncAction
from netbilling.models.wallet import TransactionType, PaymentMethod


# --- Client ---
class ClientCreate(BaseModel):
    name: str = Field(..., max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=20)
    monthly_rate: Optional[Decimal] = Field(None, ge=0, description="Si se omite se toma del paquete")
    subscription_type: SubscriptionType = SubscriptionType.MONTHLY
    service_package_id: Optional[int] = None
    radius_username: Optional[str] = Field(None, max_length=100)
    radius_password: Optional[str] = Field(None, max_length=100)


class ClientResponse(BaseModel):
    id: int
    tenant_id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    status: ClientStatus
    status_reason: Optional[str] = None
    subscription_type: SubscriptionType
    monthly_rate: float
    wallet_balance: float
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    service_package_id: Optional[int] = None
    radius_username: Optional[str] = None
    radius_sync_status: RadiusSyncStatus
    last_radius_sync_at: Optional[datetime] = None
    radius_sync_attempts: int
    last_radius_sync_error: Optional[str] = None
    disconnection_scheduled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# --- Transiciones ---
class TransitionRequest(BaseModel):
    target_state: ClientStatus = Field(..., alias="targetState")
    reason: Optional[str] = None

    class Config:
        populate_by_name = True


class SyncResultResponse(BaseModel):
    client_id: int
    action: SyncAction
    succeeded: bool
    http_status: Optional[int] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class TransitionResponse(BaseModel):
    client_id: int
    previous_status: ClientStatus
    status: ClientStatus
    sync: Optional[SyncResultResponse] = None


# --- Suscripción / renovación ---
class RenewalDecisionResponse(BaseModel):
    decision: str                                   # renew, hold, insufficient_funds, already_valid
    new_end_date: Optional[datetime] = None
    amount: Optional[float] = None
    shortfall: Optional[float] = None
    reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    client_id: int
    status: ClientStatus
    subscription_type: SubscriptionType
    monthly_rate: float
    wallet_balance: float
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    hours_until_expiry: Optional[float] = None
    can_afford_renewal: bool
    shortfall: float
    radius_sync_status: RadiusSyncStatus
    preview: RenewalDecisionResponse


class RenewalResponse(BaseModel):
    client_id: int
    status: Optional[ClientStatus] = None
    renewed: bool
    decision: RenewalDecisionResponse
    sync: Optional[SyncResultResponse] = None


# --- Monedero ---
class WalletCreditRequest(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference_number: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None


class WalletCreditResponse(BaseModel):
    client_id: int
    duplicate: bool
    wallet_balance: float
    renewal: Optional[RenewalResponse] = None


class WalletTransactionResponse(BaseModel):
    id: int
    client_id: int
    transaction_type: TransactionType
    amount: float
    balance_after: float
    reference_number: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = None
    created_at: datetime


class ReconciliationResponse(BaseModel):
    client_id: int
    ledger_total: float
    wallet_balance: float
    transaction_count: int
    is_consistent: bool
