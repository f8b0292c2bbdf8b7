"""
NetBilling - Movimientos del monedero
Bitácora append-only: nunca se actualiza ni se borra un movimiento.
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Enum, Text, BigInteger, ForeignKey
from sqlalchemy.orm import relationship
from netbilling.models.base import TenantBase
import enum


class TransactionType(str, enum.Enum):
    CREDIT = "credit"     # Abono manual (+)
    DEBIT = "debit"       # Cargo por renovación (-)
    PAYMENT = "payment"   # Pago confirmado por la pasarela (+)
    REFUND = "refund"     # Devolución al cliente (-)


# Signo con el que cada tipo afecta el saldo
TRANSACTION_SIGN = {
    TransactionType.CREDIT: 1,
    TransactionType.PAYMENT: 1,
    TransactionType.DEBIT: -1,
    TransactionType.REFUND: -1,
}


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    BANK = "bank"
    MPESA = "mpesa"
    CARD = "card"
    WALLET = "wallet"
    OTHER = "other"


class WalletTransaction(TenantBase):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)

    transaction_type = Column(Enum(TransactionType), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)             # Magnitud, siempre > 0
    balance_after_cents = Column(BigInteger, nullable=False)
    reference_number = Column(String(100), nullable=True, index=True)
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    description = Column(Text, nullable=True)

    # Relationships
    client = relationship("Client", back_populates="wallet_transactions")

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_cents) / 100

    @property
    def signed_amount_cents(self) -> int:
        return TRANSACTION_SIGN[self.transaction_type] * self.amount_cents

    def __repr__(self):
        return f"<WalletTransaction {self.transaction_type.value} {self.amount} client={self.client_id}>"
