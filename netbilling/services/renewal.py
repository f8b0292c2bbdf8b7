"""
NetBilling - Evaluador de renovación
Función pura: dado el cliente y la hora actual decide si se renueva.
No toca la BD; aplicar la decisión es trabajo de BillingService.

Reglas:
  - Sin fecha de fin (nunca aprovisionado): renovar desde ahora.
  - Más de RENEWAL_WINDOW_HOURS para vencer: sigue vigente (salvo force).
  - Dentro de la ventana o vencido: renovar si el saldo cubre la tarifa,
    extendiendo desde max(ahora, fin_anterior).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from netbilling.models.client import Client, ClientStatus, SubscriptionType

DEFAULT_WINDOW_HOURS = 24

RENEWABLE_STATUSES = (ClientStatus.APPROVED, ClientStatus.ACTIVE, ClientStatus.SUSPENDED)


@dataclass(frozen=True)
class Renew:
    new_end_date: datetime
    amount: Decimal
    period_days: int


@dataclass(frozen=True)
class Hold:
    reason: str


@dataclass(frozen=True)
class InsufficientFunds:
    shortfall: Decimal
    expired: bool


@dataclass(frozen=True)
class AlreadyValid:
    end_date: datetime
    hours_until_expiry: float


RenewalDecision = Union[Renew, Hold, InsufficientFunds, AlreadyValid]


def period_days(subscription_type: SubscriptionType) -> int:
    return 7 if subscription_type == SubscriptionType.WEEKLY else 30


def hours_until_expiry(client: Client, now: datetime) -> Optional[float]:
    if client.subscription_end_date is None:
        return None
    return (client.subscription_end_date - now).total_seconds() / 3600


def evaluate(
    client: Client,
    now: datetime,
    force: bool = False,
    window_hours: int = DEFAULT_WINDOW_HOURS,
) -> RenewalDecision:
    if client.status not in RENEWABLE_STATUSES:
        return Hold(f"Estado '{client.status.value}' no admite renovación")

    rate_cents = client.monthly_rate_cents or 0
    if rate_cents <= 0:
        return Hold("El cliente no tiene tarifa configurada")

    days = period_days(client.subscription_type)
    end = client.subscription_end_date

    if end is not None:
        hours = hours_until_expiry(client, now)
        if hours > window_hours and not force:
            return AlreadyValid(end_date=end, hours_until_expiry=hours)
        base = max(now, end)
        expired = end <= now
    else:
        base = now
        expired = True

    balance_cents = client.wallet_balance_cents or 0
    if balance_cents < rate_cents:
        return InsufficientFunds(
            shortfall=Decimal(rate_cents - balance_cents) / 100,
            expired=expired,
        )

    return Renew(
        new_end_date=base + timedelta(days=days),
        amount=Decimal(rate_cents) / 100,
        period_days=days,
    )
