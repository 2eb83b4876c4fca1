"""Order Repository: query helpers over a caller-owned Session.

Nothing here commits. Callers decide the transaction boundary through
``db.transaction``; these helpers only read, lock and conditionally update.
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import Order, utcnow
from .status import ACTIVE_STATUSES, FulfillmentMethod, OrderStatus


def _values(statuses: Iterable[OrderStatus]) -> List[str]:
    return [OrderStatus(s).value for s in statuses]


def get(session: Session, order_id: int, fresh: bool = False) -> Optional[Order]:
    q = session.query(Order).filter(Order.id == order_id)
    if fresh:
        q = q.populate_existing()
    return q.first()


def get_for_update(session: Session, order_id: int) -> Optional[Order]:
    # FOR UPDATE where the dialect has it; SQLite serialises writers anyway
    return (
        session.query(Order)
        .filter(Order.id == order_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def update_where_status(session: Session, order_id: int, statuses: Iterable[OrderStatus], **values) -> bool:
    """Apply ``values`` only while the order is in one of ``statuses``."""
    values = dict(values)
    values["updated_at"] = utcnow()
    changed = (
        session.query(Order)
        .filter(Order.id == order_id, Order.status.in_(_values(statuses)))
        .update(values, synchronize_session=False)
    )
    return changed == 1


def compare_and_set_status(
    session: Session,
    order_id: int,
    sources: Iterable[OrderStatus],
    target: OrderStatus,
    **values,
) -> bool:
    """Move the order to ``target`` only if it is still in one of ``sources``.

    Returns False when another writer got there first.
    """
    return update_where_status(session, order_id, sources, status=OrderStatus(target).value, **values)


def code_exists(session: Session, code: str) -> bool:
    return session.query(Order.id).filter(Order.order_code == code).first() is not None


def find_by_checkout_reference(session: Session, reference: str) -> Optional[Order]:
    return session.query(Order).filter(Order.checkout_reference == reference).first()


def claim_checkout(session: Session, order_id: int, now: datetime, stale_before: datetime) -> bool:
    """Reserve checkout creation for one caller (compare-and-swap on checkout_claimed_at)."""
    changed = (
        session.query(Order)
        .filter(
            Order.id == order_id,
            Order.status == OrderStatus.AWAITING_PAYMENT.value,
            Order.checkout_reference.is_(None),
            or_(Order.checkout_claimed_at.is_(None), Order.checkout_claimed_at < stale_before),
        )
        .update({Order.checkout_claimed_at: now}, synchronize_session=False)
    )
    return changed == 1


def store_checkout_reference(session: Session, order_id: int, claimed_at: datetime, reference: str) -> bool:
    changed = (
        session.query(Order)
        .filter(Order.id == order_id, Order.checkout_claimed_at == claimed_at)
        .update(
            {Order.checkout_reference: reference, Order.checkout_claimed_at: None},
            synchronize_session=False,
        )
    )
    return changed == 1


def release_checkout(session: Session, order_id: int, claimed_at: datetime) -> None:
    (
        session.query(Order)
        .filter(Order.id == order_id, Order.checkout_claimed_at == claimed_at)
        .update({Order.checkout_claimed_at: None}, synchronize_session=False)
    )


def list_ready_deliveries(session: Session) -> List[Order]:
    return (
        session.query(Order)
        .filter(
            Order.status == OrderStatus.READY.value,
            Order.fulfillment_method == FulfillmentMethod.DELIVERY.value,
            Order.delivery_address.isnot(None),
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
        .all()
    )


def list_active_deliveries(session: Session, driver_id: int) -> List[Order]:
    return (
        session.query(Order)
        .filter(
            Order.status == OrderStatus.OUT_FOR_DELIVERY.value,
            Order.fulfillment_method == FulfillmentMethod.DELIVERY.value,
            Order.driver_id == driver_id,
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
        .all()
    )


def list_user_orders(
    session: Session,
    user_id: int,
    statuses: Optional[Iterable[OrderStatus]] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Order]:
    q = session.query(Order).filter(Order.user_id == user_id)
    if statuses:
        q = q.filter(Order.status.in_(_values(statuses)))
    q = q.order_by(Order.created_at.desc(), Order.id.desc())
    if offset is not None:
        q = q.offset(offset)
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def list_orders(
    session: Session,
    statuses: Optional[Iterable[OrderStatus]] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
) -> List[Order]:
    q = session.query(Order).filter(Order.status.in_(_values(statuses or ACTIVE_STATUSES)))
    q = q.order_by(Order.created_at.desc(), Order.id.desc())
    if offset is not None:
        q = q.offset(offset)
    if limit is not None:
        q = q.limit(limit)
    return q.all()
