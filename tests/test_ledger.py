"""
Ledger del monedero: saldo y bitácora siempre cuadran.
"""
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from netbilling.exceptions import InvalidAmount, InsufficientFunds
from netbilling.models.wallet import WalletTransaction, TransactionType, PaymentMethod
from netbilling.services import ledger


async def _tx_count(db, client_id):
    return await db.scalar(select(func.count(WalletTransaction.id)).where(WalletTransaction.client_id == client_id))


@pytest.mark.parametrize("amount", ["0", "-5", "10.001", "abc", "NaN"])
def test_to_cents_rejects_invalid_amounts(amount):
    with pytest.raises(InvalidAmount):
        ledger.to_cents(amount)


def test_to_cents_accepts_whole_cents():
    assert ledger.to_cents("10.5") == 1050
    assert ledger.to_cents(Decimal("0.01")) == 1
    assert ledger.to_cents(500) == 50000


async def test_credit_appends_one_transaction(db, make_client):
    client = await make_client(balance_cents=0)

    balance = await ledger.credit(db, client, "250.00", reference="CASH-1", payment_method=PaymentMethod.CASH)
    await db.commit()

    assert balance == Decimal("250")
    txs = (await db.execute(select(WalletTransaction).where(WalletTransaction.client_id == client.id))).scalars().all()
    assert len(txs) == 1
    assert txs[0].transaction_type == TransactionType.CREDIT
    assert txs[0].amount_cents == 25000
    assert txs[0].balance_after_cents == 25000
    assert txs[0].reference_number == "CASH-1"


async def test_debit_below_balance_fails_without_side_effects(db, make_client):
    client = await make_client(balance_cents=30000)

    with pytest.raises(InsufficientFunds) as exc:
        await ledger.debit(db, client, "500")

    assert exc.value.shortfall == Decimal("200.00")
    assert client.wallet_balance_cents == 30000
    assert await _tx_count(db, client.id) == 0


async def test_debit_exact_balance_leaves_zero(db, make_client):
    client = await make_client(balance_cents=50000)

    assert await ledger.debit(db, client, "500") == Decimal("0")


async def test_admin_adjustment_may_overdraw(db, make_client):
    client = await make_client(balance_cents=1000)

    balance = await ledger.debit(db, client, "25", allow_negative=True)

    assert balance == Decimal("-15")


async def test_invalid_amount_leaves_balance_untouched(db, make_client):
    client = await make_client(balance_cents=1000)

    with pytest.raises(InvalidAmount):
        await ledger.credit(db, client, "-10")
    with pytest.raises(InvalidAmount):
        await ledger.debit(db, client, "0.005")

    assert client.wallet_balance_cents == 1000
    assert await _tx_count(db, client.id) == 0


async def test_refund_takes_money_out_of_wallet(db, make_client):
    client = await make_client(balance_cents=10000)

    assert await ledger.refund(db, client, "40") == Decimal("60")
    with pytest.raises(InsufficientFunds):
        await ledger.refund(db, client, "100")


async def test_reconciliation_after_mixed_operations(db, make_client):
    client = await make_client(balance_cents=0)

    await ledger.record_payment(db, client, "1000", reference="MP-1")
    await ledger.credit(db, client, "20.50")
    await ledger.debit(db, client, "500")
    await ledger.refund(db, client, "0.50")
    await ledger.debit(db, client, "600", allow_negative=True)
    await db.commit()

    report = await ledger.reconcile(db, client)

    assert report.is_consistent
    assert report.ledger_total == Decimal("-80.00")
    assert report.wallet_balance == Decimal("-80.00")
    assert report.transaction_count == 5


async def test_reconciliation_detects_out_of_band_balance_change(db, make_client):
    client = await make_client(balance_cents=0)
    await ledger.credit(db, client, "100")
    client.wallet_balance_cents += 500
    await db.commit()

    report = await ledger.reconcile(db, client)

    assert not report.is_consistent
    assert report.ledger_total == Decimal("100.00")
    assert report.wallet_balance == Decimal("105.00")


async def test_find_by_reference_only_matches_incoming_money(db, make_client, tenant):
    client = await make_client(balance_cents=50000)
    await ledger.debit(db, client, "10", reference="REF-1")
    await db.commit()

    assert await ledger.find_by_reference(db, tenant.id, "REF-1") is None

    await ledger.record_payment(db, client, "10", reference="REF-1")
    await db.commit()
    assert await ledger.find_by_reference(db, tenant.id, "REF-1") is not None
