from typing import List

from . import db, repository
from .errors import InvalidTransition, OrderNotFound
from .lifecycle import OrderLifecycleEngine
from .logs import get_logger
from .models import Order
from .status import OrderStatus

logger = get_logger("dispatch")


def _require_deliverable(order: Order) -> None:
    if not order.is_delivery:
        raise InvalidTransition(order.id, order.status, "accepted for delivery", "not a delivery order")
    if not order.delivery_address:
        raise InvalidTransition(order.id, order.status, "accepted for delivery", "order has no delivery address")


class DeliveryDispatch:
    """Driver-facing lifecycle operations for delivery orders."""

    def __init__(self, lifecycle: OrderLifecycleEngine):
        self.lifecycle = lifecycle
        self.session_factory = lifecycle.session_factory

    def list_ready_deliveries(self) -> List[Order]:
        with db.read_session(self.session_factory) as session:
            orders = repository.list_ready_deliveries(session)
        logger.info(f"Found {len(orders)} ready delivery orders")
        return orders

    def list_active_deliveries(self, driver_id: int) -> List[Order]:
        with db.read_session(self.session_factory) as session:
            orders = repository.list_active_deliveries(session, driver_id)
        logger.info(f"Found {len(orders)} active delivery orders for driver {driver_id}")
        return orders

    def get_delivery_details(self, order_id: int) -> Order:
        order = self.lifecycle.get_order(order_id)
        if not order.is_delivery:
            raise OrderNotFound(order_id)
        return order

    def accept_delivery(self, order_id: int, driver_id: int) -> Order:
        order = self.lifecycle.transition(
            order_id,
            OrderStatus.OUT_FOR_DELIVERY,
            sources={OrderStatus.READY},
            action="accepted for delivery",
            guard=_require_deliverable,
            values={"driver_id": driver_id},
            actor_id=driver_id,
        )
        logger.info(f"Order {order_id} accepted by driver {driver_id}")
        return order

    def mark_delivered(self, order_id: int, driver_id: int) -> Order:
        # entry into DELIVERED re-runs the idempotent loyalty award, then notifies after commit
        order = self.lifecycle.transition(
            order_id,
            OrderStatus.DELIVERED,
            sources={OrderStatus.OUT_FOR_DELIVERY},
            action="marked delivered",
            actor_id=driver_id,
        )
        logger.info(f"Order {order_id} marked as delivered by driver {driver_id}")
        return order
