from decimal import Decimal

import pytest

from order_service import db
from order_service.errors import OrderNotFound
from order_service.loyalty import LoyaltyLedger
from order_service.models import ORDER_EARNED, LoyaltyAccount, PointsTransaction
from order_service.status import OrderStatus


@pytest.mark.parametrize(
    "total,points",
    [("20.00", 2), ("19.99", 1), ("9.99", 0), ("0", 0), ("123.45", 12)],
)
def test_points_are_a_floored_tenth_of_the_total(total, points):
    assert LoyaltyLedger(Decimal("0.10")).points_for(Decimal(total)) == points


def test_award_is_applied_exactly_once(lifecycle, place_order, ledger_entries):
    order = place_order(OrderStatus.PAYMENT_CONFIRMED, user_id=7)

    awarded = [lifecycle.award_loyalty_points_if_eligible(order.id, 7) for _ in range(4)]

    assert awarded == [2, 0, 0, 0]
    entries = ledger_entries(order.id)
    assert len(entries) == 1
    assert entries[0].points == 2
    assert entries[0].reason == ORDER_EARNED
    account = lifecycle.get_loyalty_account(7)
    assert account.points == 2
    assert account.total_spent_this_period == Decimal("20.00")


def test_unpaid_orders_earn_nothing(lifecycle, place_order, ledger_entries):
    order = place_order(OrderStatus.AWAITING_PAYMENT, user_id=7)

    assert lifecycle.award_loyalty_points_if_eligible(order.id, 7) == 0
    assert ledger_entries(order.id) == []


def test_unknown_order_is_reported(lifecycle):
    with pytest.raises(OrderNotFound):
        lifecycle.award_loyalty_points_if_eligible(999, 7)


def test_account_is_created_lazily_for_registered_users(lifecycle, place_order):
    place_order(user_id=11)
    place_order(user_id=11)
    place_order()

    account = lifecycle.get_loyalty_account(11)
    assert account is not None
    assert account.points == 0


def test_unique_constraint_rejects_a_racing_duplicate(session_factory, place_order, ledger_entries):
    order = place_order(OrderStatus.PAYMENT_CONFIRMED, user_id=3)
    ledger = LoyaltyLedger(Decimal("0.10"))

    with db.transaction(session_factory) as session:
        account = ledger.ensure_account(session, 3)
        session.add(
            PointsTransaction(user_id=3, account_id=account.id, points=2, reason=ORDER_EARNED, order_id=order.id)
        )

    # a second writer whose existence check ran before the first commit
    ledger.has_award = lambda session, order_id, user_id: False
    with db.transaction(session_factory) as session:
        assert ledger.award_if_eligible(session, order) == 0

    assert len(ledger_entries(order.id)) == 1
    with db.read_session(session_factory) as session:
        assert ledger.balance(session, 3) == 0
        assert session.query(LoyaltyAccount).count() == 1


def test_ledger_failure_never_blocks_fulfillment(lifecycle, place_order, ledger_entries):
    order = place_order(OrderStatus.PAYMENT_CONFIRMED, user_id=5)

    def broken(session, order, user_id=None):
        raise RuntimeError("ledger offline")

    lifecycle.ledger.award_if_eligible = broken

    accepted = lifecycle.accept_order(order.id, 15)
    assert accepted.status == OrderStatus.CONFIRMED.value
    assert lifecycle.award_loyalty_points_if_eligible(order.id, 5) == 0
    assert ledger_entries(order.id) == []
