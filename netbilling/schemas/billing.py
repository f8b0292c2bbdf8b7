"""
NetBilling - Schemas de webhooks entrantes
Pagos confirmados por la pasarela y confirmaciones del punto de enforcement.
Aceptan camelCase (formato de la pasarela) y snake_case.
"""
from decimal import Decimal
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from netbilling.models.sync import SyncAction
from netbilling.models.wallet import PaymentMethod


WIRE_TO_ACTION = {"connect": "ensure_connected", "suspend": "suspend", "disconnect": "disconnect"}


class PaymentConfirmation(BaseModel):
    client_id: int = Field(..., alias="clientId")
    amount: Decimal
    reference_number: str = Field(..., alias="referenceNumber", min_length=1, max_length=100)
    method: PaymentMethod = PaymentMethod.MPESA

    class Config:
        populate_by_name = True


class EnforcementCallback(BaseModel):
    client_id: Optional[int] = Field(None, alias="clientId")
    username: Optional[str] = None
    action: SyncAction
    success: bool
    error: Optional[str] = None

    class Config:
        populate_by_name = True

    @field_validator("action", mode="before")
    @classmethod
    def _wire_action(cls, value):
        # El punto de enforcement responde con el verbo del protocolo
        if isinstance(value, str):
            return WIRE_TO_ACTION.get(value, value)
        return value

    @model_validator(mode="after")
    def _requires_identity(self):
        if self.client_id is None and not self.username:
            raise ValueError("Se requiere clientId o username")
        return self


class WebhookAck(BaseModel):
    status: str = "ok"
    duplicate: bool = False
    client_id: int
    wallet_balance: Optional[float] = None
    renewal: Optional[str] = None
