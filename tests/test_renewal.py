"""
Evaluador de renovación: decisiones puras sobre clientes en memoria.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from netbilling.models.client import Client, ClientStatus, SubscriptionType
from netbilling.services import renewal

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make(status=ClientStatus.ACTIVE, balance=50000, rate=50000, end=None,
         subscription_type=SubscriptionType.MONTHLY) -> Client:
    return Client(
        name="Test", status=status, wallet_balance_cents=balance, monthly_rate_cents=rate,
        subscription_end_date=end, subscription_type=subscription_type,
    )


def test_weekly_client_inside_window_renews_from_old_end():
    old_end = NOW + timedelta(hours=20)
    client = make(end=old_end, subscription_type=SubscriptionType.WEEKLY)

    decision = renewal.evaluate(client, NOW)

    assert isinstance(decision, renewal.Renew)
    assert decision.new_end_date == old_end + timedelta(days=7)
    assert decision.amount == Decimal("500")
    assert decision.period_days == 7


def test_expired_subscription_renews_from_now():
    client = make(end=NOW - timedelta(days=3))

    decision = renewal.evaluate(client, NOW)

    assert isinstance(decision, renewal.Renew)
    assert decision.new_end_date == NOW + timedelta(days=30)


def test_never_provisioned_renews_from_now():
    decision = renewal.evaluate(make(status=ClientStatus.APPROVED, end=None), NOW)

    assert isinstance(decision, renewal.Renew)
    assert decision.new_end_date == NOW + timedelta(days=30)


def test_forced_renewal_with_time_left_extends_old_end():
    old_end = NOW + timedelta(days=10)
    client = make(end=old_end)

    assert isinstance(renewal.evaluate(client, NOW), renewal.AlreadyValid)

    decision = renewal.evaluate(client, NOW, force=True)
    assert isinstance(decision, renewal.Renew)
    assert decision.new_end_date == old_end + timedelta(days=30)


def test_more_than_window_left_is_already_valid():
    end = NOW + timedelta(hours=48)
    decision = renewal.evaluate(make(end=end), NOW)

    assert isinstance(decision, renewal.AlreadyValid)
    assert decision.end_date == end
    assert decision.hours_until_expiry == pytest.approx(48)


def test_exactly_at_window_boundary_is_evaluated():
    decision = renewal.evaluate(make(end=NOW + timedelta(hours=24)), NOW)
    assert isinstance(decision, renewal.Renew)


def test_expired_without_funds_reports_shortfall():
    client = make(balance=30000, rate=50000, end=NOW - timedelta(hours=1))

    decision = renewal.evaluate(client, NOW)

    assert isinstance(decision, renewal.InsufficientFunds)
    assert decision.shortfall == Decimal("200")
    assert decision.expired is True


def test_inside_window_without_funds_is_not_expired():
    client = make(balance=0, end=NOW + timedelta(hours=5))

    decision = renewal.evaluate(client, NOW)

    assert isinstance(decision, renewal.InsufficientFunds)
    assert decision.expired is False


@pytest.mark.parametrize("status", [
    ClientStatus.PENDING, ClientStatus.REJECTED, ClientStatus.DISCONNECTED,
])
def test_non_renewable_status_is_held(status):
    decision = renewal.evaluate(make(status=status, end=NOW - timedelta(days=1)), NOW)
    assert isinstance(decision, renewal.Hold)


def test_client_without_rate_is_held():
    decision = renewal.evaluate(make(rate=0, end=NOW - timedelta(days=1)), NOW)
    assert isinstance(decision, renewal.Hold)


def test_custom_window():
    client = make(end=NOW + timedelta(hours=30))
    assert isinstance(renewal.evaluate(client, NOW, window_hours=24), renewal.AlreadyValid)
    assert isinstance(renewal.evaluate(client, NOW, window_hours=48), renewal.Renew)
