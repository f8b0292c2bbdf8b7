"""
NetBilling - Ledger del monedero
Toda modificación del saldo pasa por aquí y deja exactamente un
WalletTransaction en la misma transacción de BD (flush, sin commit).
El commit lo hace quien llama, junto con el resto de la operación.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from netbilling.exceptions import InvalidAmount, InsufficientFunds
from netbilling.models.client import Client
from netbilling.models.wallet import (
    WalletTransaction, TransactionType, PaymentMethod, TRANSACTION_SIGN
)

logger = logging.getLogger("ledger")

CENT = Decimal("0.01")

Amount = Union[Decimal, int, str]


def to_cents(amount: Amount) -> int:
    """Convierte un monto positivo a centavos. Rechaza <= 0 y fracciones de centavo."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Monto inválido: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"El monto debe ser mayor a cero: {amount}")
    if value != value.quantize(CENT):
        raise InvalidAmount(f"El monto no puede tener fracciones de centavo: {amount}")
    return int(value * 100)


def rate_to_cents(amount: Amount) -> int:
    """Tarifa configurada (admite cero)."""
    if Decimal(str(amount)) == 0:
        return 0
    return to_cents(amount)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


@dataclass
class Reconciliation:
    client_id: int
    ledger_total: Decimal
    wallet_balance: Decimal
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return self.ledger_total == self.wallet_balance


async def _append(
    db: AsyncSession,
    client: Client,
    transaction_type: TransactionType,
    amount_cents: int,
    reference: Optional[str],
    payment_method: Optional[PaymentMethod],
    description: Optional[str],
) -> WalletTransaction:
    client.wallet_balance_cents = (client.wallet_balance_cents or 0) + TRANSACTION_SIGN[transaction_type] * amount_cents
    tx = WalletTransaction(
        tenant_id=client.tenant_id,
        client_id=client.id,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        balance_after_cents=client.wallet_balance_cents,
        reference_number=reference,
        payment_method=payment_method,
        description=description,
    )
    db.add(tx)
    await db.flush()
    logger.info(
        f"Monedero cliente {client.id}: {transaction_type.value} {from_cents(amount_cents)} "
        f"→ saldo {from_cents(client.wallet_balance_cents)}"
    )
    return tx


async def credit(
    db: AsyncSession,
    client: Client,
    amount: Amount,
    reference: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    description: Optional[str] = None,
) -> Decimal:
    """Abono manual al monedero. Retorna el nuevo saldo."""
    cents = to_cents(amount)
    await _append(db, client, TransactionType.CREDIT, cents, reference, payment_method,
                  description or "Abono al monedero")
    return client.wallet_balance


async def record_payment(
    db: AsyncSession,
    client: Client,
    amount: Amount,
    reference: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    description: Optional[str] = None,
) -> Decimal:
    """Pago confirmado por la pasarela. Igual que credit pero tipo payment."""
    cents = to_cents(amount)
    await _append(db, client, TransactionType.PAYMENT, cents, reference, payment_method,
                  description or "Pago recibido")
    return client.wallet_balance


async def debit(
    db: AsyncSession,
    client: Client,
    amount: Amount,
    reference: Optional[str] = None,
    description: Optional[str] = None,
    allow_negative: bool = False,
) -> Decimal:
    """
    Cargo al monedero. Falla con InsufficientFunds si el saldo previo
    no cubre el monto (salvo allow_negative para ajustes administrativos).
    """
    cents = to_cents(amount)
    balance = client.wallet_balance_cents or 0
    if balance < cents and not allow_negative:
        raise InsufficientFunds(
            f"Saldo {from_cents(balance)} insuficiente para cargo de {from_cents(cents)}",
            shortfall=from_cents(cents - balance),
        )
    await _append(db, client, TransactionType.DEBIT, cents, reference, PaymentMethod.WALLET,
                  description or "Cargo al monedero")
    return client.wallet_balance


async def refund(
    db: AsyncSession,
    client: Client,
    amount: Amount,
    reference: Optional[str] = None,
    description: Optional[str] = None,
) -> Decimal:
    """Devolución de saldo al cliente (sale dinero del monedero)."""
    cents = to_cents(amount)
    balance = client.wallet_balance_cents or 0
    if balance < cents:
        raise InsufficientFunds(
            f"No se puede devolver {from_cents(cents)}: saldo {from_cents(balance)}",
            shortfall=from_cents(cents - balance),
        )
    await _append(db, client, TransactionType.REFUND, cents, reference, None,
                  description or "Devolución")
    return client.wallet_balance


async def find_by_reference(
    db: AsyncSession, tenant_id: int, reference: str
) -> Optional[WalletTransaction]:
    """Busca un movimiento de pago/abono ya registrado con esa referencia."""
    result = await db.execute(
        select(WalletTransaction).where(
            WalletTransaction.tenant_id == tenant_id,
            WalletTransaction.reference_number == reference,
            WalletTransaction.transaction_type.in_([TransactionType.PAYMENT, TransactionType.CREDIT]),
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def reconcile(db: AsyncSession, client: Client) -> Reconciliation:
    """Suma con signo de todos los movimientos vs. el saldo actual."""
    signed = case(
        (WalletTransaction.transaction_type.in_([TransactionType.CREDIT, TransactionType.PAYMENT]),
         WalletTransaction.amount_cents),
        else_=-WalletTransaction.amount_cents,
    )
    row = (await db.execute(
        select(func.coalesce(func.sum(signed), 0), func.count(WalletTransaction.id))
        .where(WalletTransaction.client_id == client.id)
    )).one()
    total_cents, count = row

    result = Reconciliation(
        client_id=client.id,
        ledger_total=from_cents(int(total_cents)),
        wallet_balance=from_cents(client.wallet_balance_cents or 0),
        transaction_count=int(count),
    )
    if not result.is_consistent:
        logger.warning(
            f"Descuadre en monedero de cliente {client.id}: "
            f"ledger={result.ledger_total} saldo={result.wallet_balance}"
        )
    return result
