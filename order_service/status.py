"""Canonical order state machine.

``TRANSITIONS`` is the single source of truth for which status may follow
which, and ``ON_ENTRY`` for what happens when an order enters a status.
Nothing else in the service keeps its own list of statuses.
"""
from enum import Enum
from typing import Dict, FrozenSet


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class FulfillmentMethod(str, Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class Effect(str, Enum):
    AWARD_LOYALTY = "AWARD_LOYALTY"
    NOTIFY_CUSTOMER = "NOTIFY_CUSTOMER"


S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.AWAITING_PAYMENT: frozenset({S.PAYMENT_CONFIRMED, S.PAYMENT_FAILED}),
    S.PAYMENT_CONFIRMED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PREPARING, S.READY, S.CANCELLED}),
    S.PREPARING: frozenset({S.READY}),
    # pickup orders are handed over at the counter, delivery orders go out
    S.READY: frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED}),
    S.PAYMENT_FAILED: frozenset(),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}

ON_ENTRY: Dict[OrderStatus, FrozenSet[Effect]] = {
    S.AWAITING_PAYMENT: frozenset(),
    S.PAYMENT_CONFIRMED: frozenset({Effect.AWARD_LOYALTY}),
    S.PAYMENT_FAILED: frozenset(),
    S.CONFIRMED: frozenset({Effect.AWARD_LOYALTY}),
    S.PREPARING: frozenset({Effect.AWARD_LOYALTY}),
    S.READY: frozenset({Effect.AWARD_LOYALTY}),
    S.OUT_FOR_DELIVERY: frozenset({Effect.AWARD_LOYALTY, Effect.NOTIFY_CUSTOMER}),
    S.DELIVERED: frozenset({Effect.AWARD_LOYALTY, Effect.NOTIFY_CUSTOMER}),
    S.CANCELLED: frozenset({Effect.NOTIFY_CUSTOMER}),
}

# statuses shown on the staff board by default
ACTIVE_STATUSES = (S.PAYMENT_CONFIRMED, S.CONFIRMED, S.PREPARING, S.READY)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[OrderStatus(current)]


def sources_for(target: OrderStatus) -> FrozenSet[OrderStatus]:
    return frozenset(s for s, nxt in TRANSITIONS.items() if target in nxt)


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[OrderStatus(status)]


def triggers(status: OrderStatus, effect: Effect) -> bool:
    return effect in ON_ENTRY[OrderStatus(status)]


def loyalty_eligible_statuses() -> FrozenSet[OrderStatus]:
    return frozenset(s for s, effects in ON_ENTRY.items() if Effect.AWARD_LOYALTY in effects)
