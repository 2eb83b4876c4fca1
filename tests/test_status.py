import pytest

from order_service.status import (
    ON_ENTRY,
    TRANSITIONS,
    Effect,
    OrderStatus,
    can_transition,
    is_terminal,
    loyalty_eligible_statuses,
    sources_for,
    triggers,
)

S = OrderStatus


def test_every_status_has_table_entries():
    assert set(TRANSITIONS) == set(OrderStatus)
    assert set(ON_ENTRY) == set(OrderStatus)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.AWAITING_PAYMENT, S.PAYMENT_CONFIRMED),
        (S.AWAITING_PAYMENT, S.PAYMENT_FAILED),
        (S.PAYMENT_CONFIRMED, S.CONFIRMED),
        (S.CONFIRMED, S.CANCELLED),
        (S.CONFIRMED, S.READY),
        (S.READY, S.OUT_FOR_DELIVERY),
        (S.OUT_FOR_DELIVERY, S.DELIVERED),
    ],
)
def test_allowed_moves(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.AWAITING_PAYMENT, S.CONFIRMED),
        (S.PAYMENT_FAILED, S.PAYMENT_CONFIRMED),
        (S.READY, S.CANCELLED),
        (S.OUT_FOR_DELIVERY, S.READY),
        (S.DELIVERED, S.OUT_FOR_DELIVERY),
        (S.CANCELLED, S.CONFIRMED),
    ],
)
def test_rejected_moves(current, target):
    assert not can_transition(current, target)


def test_terminal_statuses():
    assert {s for s in OrderStatus if is_terminal(s)} == {S.PAYMENT_FAILED, S.DELIVERED, S.CANCELLED}


def test_sources_follow_the_table():
    assert sources_for(S.READY) == {S.CONFIRMED, S.PREPARING}
    assert sources_for(S.AWAITING_PAYMENT) == frozenset()


def test_loyalty_is_earned_only_once_paid():
    eligible = loyalty_eligible_statuses()
    assert S.PAYMENT_CONFIRMED in eligible
    assert S.DELIVERED in eligible
    assert not eligible & {S.AWAITING_PAYMENT, S.PAYMENT_FAILED, S.CANCELLED}


def test_customer_hears_about_hand_off_and_cancellation():
    notified = {s for s in OrderStatus if triggers(s, Effect.NOTIFY_CUSTOMER)}
    assert notified == {S.OUT_FOR_DELIVERY, S.DELIVERED, S.CANCELLED}
    assert triggers("DELIVERED", Effect.AWARD_LOYALTY)
