"""Order Lifecycle Engine.

Every state change goes through :meth:`OrderLifecycleEngine.transition`:
read under lock, check the source status against the canonical table,
compare-and-set the new status, run the entry effects of the new status
inside the same transaction, commit, and only then talk to the outside
world (notifications). Gateway calls happen before any transaction opens.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import config, db, repository
from .codes import OrderCodeGenerator
from .errors import (
    CheckoutInProgress,
    Forbidden,
    GatewayUnavailable,
    InvalidOrderRequest,
    InvalidTransition,
    ItemUnavailable,
    OrderCodeConflict,
    OrderNotFound,
    StorageError,
)
from .logs import get_logger
from .loyalty import LoyaltyLedger
from .metrics import ORDER_TRANSITIONS, ORDERS_CREATED
from .models import LoyaltyAccount, Order, OrderItem, utcnow
from .notifications import ORDER_STATUS_UPDATE
from .payments import PaymentReconciler, PaymentState, hosted_checkout_url
from .status import (
    Effect,
    FulfillmentMethod,
    OrderStatus,
    can_transition,
    is_terminal,
    loyalty_eligible_statuses,
    sources_for,
    triggers,
)

logger = get_logger("lifecycle")

ORDER_CODE_INSERT_ATTEMPTS = 3
CENT = Decimal("0.01")

# accepted orders whose ready-by time the kitchen may still revise
ESTIMATE_STATUSES = frozenset({OrderStatus.CONFIRMED, OrderStatus.PREPARING})

CUSTOMER_MESSAGES = {
    OrderStatus.OUT_FOR_DELIVERY: (
        "Your order is on its way",
        "The driver has picked up your order #{id} and is on the way to your address.",
    ),
    OrderStatus.DELIVERED: (
        "Order delivered",
        "Your order #{id} has been delivered. Thank you for your purchase!",
    ),
    OrderStatus.CANCELLED: (
        "Order cancelled",
        "The restaurant could not accept your order #{id}.",
    ),
}


@dataclass
class CreateOrderResult:
    order: Order
    message: str


@dataclass
class OrderStatusView:
    order: Order
    payment_check_deferred: bool = False


@dataclass
class PaymentVerification:
    order: Order
    message: str
    payment_state: Optional[PaymentState] = None
    loyalty_points_awarded: int = 0


@dataclass
class CheckoutSession:
    order_id: int
    checkout_id: str
    checkout_url: str


@dataclass
class RepeatItem:
    menu_item_id: int
    name: str
    price: Decimal
    quantity: int
    customizations: Optional[Dict[str, Any]] = None


@dataclass
class RepeatOrderResult:
    items: List[RepeatItem] = field(default_factory=list)
    unavailable_items: List[str] = field(default_factory=list)
    message: str = ""


class OrderLifecycleEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        catalog,
        gateway,
        notifier,
        ledger: Optional[LoyaltyLedger] = None,
        codes: Optional[OrderCodeGenerator] = None,
        auto_accept: bool = config.AUTO_ACCEPT_ORDERS,
        auto_accept_minutes: int = config.AUTO_ACCEPT_MINUTES,
        checkout_claim_ttl: int = config.CHECKOUT_CLAIM_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.gateway = gateway
        self.reconciler = PaymentReconciler(gateway)
        self.notifier = notifier
        self.ledger = ledger or LoyaltyLedger()
        self.codes = codes or OrderCodeGenerator(self._code_taken)
        self.auto_accept = auto_accept
        self.auto_accept_minutes = auto_accept_minutes
        self.checkout_claim_ttl = timedelta(seconds=checkout_claim_ttl)
        self.clock = clock

    # =====================
    # ORDER CREATION
    # =====================

    def _code_taken(self, code: str) -> bool:
        with db.read_session(self.session_factory) as session:
            return repository.code_exists(session, code)

    def _price_items(self, items) -> List[Tuple[Any, Any]]:
        priced = []
        for item in items:
            if item.quantity is None or item.quantity < 1:
                raise InvalidOrderRequest(f"Quantity for menu item {item.menu_item_id} must be positive")
            current = self.catalog.get_item(item.menu_item_id)
            if current is None:
                raise ItemUnavailable(item.menu_item_id)
            if not current.available:
                raise ItemUnavailable(item.menu_item_id, current.name)
            if item.price is not None and Decimal(str(item.price)) != current.price:
                logger.info(
                    f"Submitted price {item.price} for item {item.menu_item_id} replaced by catalog price {current.price}"
                )
            priced.append((item, current))
        return priced

    def create_order(
        self,
        items,
        total=None,
        fulfillment_method=FulfillmentMethod.PICKUP,
        delivery_address: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> CreateOrderResult:
        method = FulfillmentMethod(fulfillment_method)
        is_delivery = method is FulfillmentMethod.DELIVERY
        if not items:
            raise InvalidOrderRequest("Order must contain at least one item")
        if is_delivery and not (delivery_address and delivery_address.strip()):
            raise InvalidOrderRequest("Delivery orders require a delivery address")

        priced = self._price_items(items)
        computed = sum((c.price * i.quantity for i, c in priced), Decimal("0")).quantize(CENT)
        if total is not None and Decimal(str(total)).quantize(CENT) != computed:
            logger.warning(f"Submitted total {total} differs from catalog total {computed}, using catalog total")

        for attempt in range(1, ORDER_CODE_INSERT_ATTEMPTS + 1):
            # code generation talks to storage, keep it outside the write transaction
            code = self.codes.generate() if is_delivery else None
            try:
                with db.transaction(self.session_factory) as session:
                    order = Order(
                        user_id=user_id,
                        status=OrderStatus.AWAITING_PAYMENT.value,
                        fulfillment_method=method.value,
                        total=computed,
                        delivery_address=delivery_address if is_delivery else None,
                        order_code=code,
                        created_at=self.clock(),
                    )
                    order.items = [
                        OrderItem(
                            menu_item_id=current.id,
                            name=current.name,
                            quantity=item.quantity,
                            price=current.price,
                            customizations=item.customizations,
                        )
                        for item, current in priced
                    ]
                    session.add(order)
                    try:
                        session.flush()
                    except IntegrityError as e:
                        if code is None:
                            raise
                        raise OrderCodeConflict(code) from e
                    if user_id is not None:
                        self.ledger.ensure_account(session, user_id)
                break
            except OrderCodeConflict as e:
                logger.warning(f"Order code {e.order_code} taken at insert (attempt {attempt}), regenerating")
        else:
            raise StorageError("Could not allocate a unique order code")

        ORDERS_CREATED.labels(OrderStatus.AWAITING_PAYMENT.value).inc()
        logger.info(f"Order {order.id} created ({method.value}, total {computed}) awaiting payment")

        if user_id is not None:
            message = "Order created successfully. Complete payment to earn loyalty points!"
        else:
            message = "Order created successfully. Complete payment to confirm your order."
        return CreateOrderResult(order=order, message=message)

    # =====================
    # ORDER RETRIEVAL
    # =====================

    def get_order(self, order_id: int) -> Order:
        with db.read_session(self.session_factory) as session:
            order = repository.get(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def get_order_status(self, order_id: int) -> OrderStatusView:
        order = self.get_order(order_id)
        deferred = False

        # lazy verification: pollers see payment outcomes even when the webhook never arrived
        if order.status == OrderStatus.AWAITING_PAYMENT.value and order.checkout_reference:
            logger.info(f"Lazy verification triggered for order {order_id}")
            try:
                order = self.verify_payment(order_id).order
            except GatewayUnavailable as e:
                logger.warning(f"Lazy verification for order {order_id} deferred: {e}")
                deferred = True

        if order.status == OrderStatus.PAYMENT_CONFIRMED.value and self.auto_accept:
            logger.info(f"Auto-accepting order {order_id} found in PAYMENT_CONFIRMED")
            try:
                order = self.accept_order(order_id, self.auto_accept_minutes)
            except InvalidTransition:
                order = self.get_order(order_id)
            except Exception:
                # repair is best-effort; the read still answers with the stored order
                logger.exception(f"Auto-accept repair for order {order_id} failed")

        return OrderStatusView(order=order, payment_check_deferred=deferred)

    def list_user_orders(
        self,
        user_id: int,
        statuses: Optional[Iterable[OrderStatus]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Order]:
        with db.read_session(self.session_factory) as session:
            return repository.list_user_orders(session, user_id, statuses, limit, offset)

    def get_last_order(self, user_id: int) -> Optional[Order]:
        orders = self.list_user_orders(user_id, statuses=loyalty_eligible_statuses(), limit=1)
        return orders[0] if orders else None

    def list_orders(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Order]:
        with db.read_session(self.session_factory) as session:
            return repository.list_orders(session, statuses, limit, offset)

    def get_loyalty_account(self, user_id: int) -> Optional[LoyaltyAccount]:
        with db.read_session(self.session_factory) as session:
            return self.ledger.get_account(session, user_id)

    # =====================
    # TRANSITIONS
    # =====================

    def transition(
        self,
        order_id: int,
        target: OrderStatus,
        sources: Optional[Iterable[OrderStatus]] = None,
        action: Optional[str] = None,
        guard: Optional[Callable[[Order], None]] = None,
        values: Optional[Dict[str, Any]] = None,
        actor_id: Optional[int] = None,
    ) -> Order:
        """Apply one status change atomically.

        ``sources`` narrows the statuses the table allows into ``target``;
        it may never widen them. ``guard`` can veto the change by raising.
        ``actor_id`` is the user performing the change and is never notified.
        """
        target = OrderStatus(target)
        permitted = sources_for(target)
        allowed = frozenset(OrderStatus(s) for s in sources) if sources is not None else permitted
        if not allowed <= permitted:
            raise ValueError(f"{sorted(s.value for s in allowed - permitted)} cannot move to {target.value}")
        action = action or f"moved to {target.value}"

        with db.transaction(self.session_factory) as session:
            order = repository.get_for_update(session, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            previous = order.status
            if not can_transition(previous, target) or OrderStatus(previous) not in allowed:
                reason = "order is closed" if is_terminal(previous) else None
                raise InvalidTransition(order_id, previous, action, reason)
            if guard is not None:
                guard(order)
            if not repository.compare_and_set_status(session, order_id, allowed, target, **(values or {})):
                current = repository.get(session, order_id, fresh=True)
                raise InvalidTransition(order_id, current.status, action)
            order = repository.get(session, order_id, fresh=True)
            self._enter(session, order)

        ORDER_TRANSITIONS.labels(target.value).inc()
        logger.info(f"Order {order_id} {previous} -> {target.value}")
        self._after_commit(order, actor_id)
        return order

    def _enter(self, session: Session, order: Order) -> int:
        """Entry effects that must commit with the status write."""
        if not triggers(order.status, Effect.AWARD_LOYALTY) or order.user_id is None:
            return 0
        try:
            return self.ledger.award_if_eligible(session, order)
        except Exception:
            # fulfillment state is authoritative; the next trigger retries the award
            logger.exception(f"Loyalty award for order {order.id} failed")
            return 0

    def _after_commit(self, order: Order, actor_id: Optional[int] = None) -> None:
        if triggers(order.status, Effect.NOTIFY_CUSTOMER):
            self._notify_customer(order, actor_id)

    def _notify_customer(self, order: Order, actor_id: Optional[int] = None) -> None:
        if order.user_id is None:
            return
        if actor_id is not None and order.user_id == actor_id:
            logger.error(
                f"Refusing to notify user {actor_id} about order {order.id}: "
                "they performed the change, notifications go to the customer"
            )
            return
        status = OrderStatus(order.status)
        title, body = CUSTOMER_MESSAGES[status]
        payload = {
            "orderId": order.id,
            "status": status.value,
            "title": title,
            "message": body.format(id=order.id),
        }
        if order.delivery_address:
            payload["deliveryAddress"] = order.delivery_address
        try:
            self.notifier.notify(order.user_id, ORDER_STATUS_UPDATE, payload)
        except Exception as e:
            logger.warning(f"Failed to notify customer {order.user_id} about order {order.id}: {e}")

    # =====================
    # PAYMENT
    # =====================

    def confirm_payment(self, session: Session, order_id: int) -> Tuple[bool, int]:
        """AWAITING_PAYMENT -> PAYMENT_CONFIRMED plus entry effects.

        Returns (changed, loyalty points awarded). ``changed`` is False when
        a concurrent verification already settled the order.
        """
        changed = repository.compare_and_set_status(
            session, order_id, {OrderStatus.AWAITING_PAYMENT}, OrderStatus.PAYMENT_CONFIRMED
        )
        if not changed:
            return False, 0
        ORDER_TRANSITIONS.labels(OrderStatus.PAYMENT_CONFIRMED.value).inc()
        order = repository.get(session, order_id, fresh=True)
        return True, self._enter(session, order)

    def confirm_and_auto_accept(self, session: Session, order_id: int) -> Tuple[bool, int]:
        """Composite transition used in auto-accept mode: confirm payment, then accept."""
        changed, points = self.confirm_payment(session, order_id)
        if not changed:
            return False, 0
        accepted = repository.compare_and_set_status(
            session,
            order_id,
            {OrderStatus.PAYMENT_CONFIRMED},
            OrderStatus.CONFIRMED,
            estimated_ready_time=self.clock() + timedelta(minutes=self.auto_accept_minutes),
            ready_at=None,
        )
        if accepted:
            ORDER_TRANSITIONS.labels(OrderStatus.CONFIRMED.value).inc()
            self._enter(session, repository.get(session, order_id, fresh=True))
            logger.info(f"Order {order_id} auto-accepted with {self.auto_accept_minutes} minute estimate")
        return True, points

    def verify_payment(self, order_id: int) -> PaymentVerification:
        order = self.get_order(order_id)
        if order.status != OrderStatus.AWAITING_PAYMENT.value:
            logger.info(f"Order {order_id} status is {order.status}, no verification needed")
            return PaymentVerification(order=order, message="Order verification not needed")
        if not order.checkout_reference:
            return PaymentVerification(order=order, message="No checkout has been started for this order")

        try:
            result = self.reconciler.reconcile(order.checkout_reference)
        except GatewayUnavailable as e:
            logger.error(f"Payment verification for order {order_id} failed, order left unchanged: {e}")
            raise

        target = result.target_status
        if target is None:
            return PaymentVerification(
                order=order, message="Payment not completed yet", payment_state=result.state
            )

        with db.transaction(self.session_factory) as session:
            if target is OrderStatus.PAYMENT_CONFIRMED:
                step = self.confirm_and_auto_accept if self.auto_accept else self.confirm_payment
                changed, points = step(session, order_id)
            else:
                changed = repository.compare_and_set_status(
                    session, order_id, {OrderStatus.AWAITING_PAYMENT}, OrderStatus.PAYMENT_FAILED
                )
                points = 0
                if changed:
                    ORDER_TRANSITIONS.labels(OrderStatus.PAYMENT_FAILED.value).inc()
            order = repository.get(session, order_id, fresh=True)

        if not changed:
            logger.info(f"Order {order_id} was settled by a concurrent verification, now {order.status}")
            return PaymentVerification(
                order=order, message="Order verification not needed", payment_state=result.state
            )
        logger.info(f"Order {order_id} payment {result.state.value}, now {order.status}")
        return PaymentVerification(
            order=order,
            message="Payment verification completed",
            payment_state=result.state,
            loyalty_points_awarded=points,
        )

    def verify_payment_by_reference(self, checkout_reference: str) -> PaymentVerification:
        with db.read_session(self.session_factory) as session:
            order = repository.find_by_checkout_reference(session, checkout_reference)
        if order is None:
            raise OrderNotFound(checkout_reference)
        return self.verify_payment(order.id)

    def initiate_checkout(self, order_id: int) -> CheckoutSession:
        """Create the hosted checkout for an order, at most one in flight per order."""
        order = self.get_order(order_id)
        if order.checkout_reference:
            return CheckoutSession(order.id, order.checkout_reference, hosted_checkout_url(order.checkout_reference))
        if order.status != OrderStatus.AWAITING_PAYMENT.value:
            raise InvalidTransition(order_id, order.status, "sent to checkout")

        claimed_at = self.clock()
        with db.transaction(self.session_factory) as session:
            claimed = repository.claim_checkout(
                session, order_id, claimed_at, claimed_at - self.checkout_claim_ttl
            )
        if not claimed:
            order = self.get_order(order_id)
            if order.checkout_reference:
                return CheckoutSession(
                    order.id, order.checkout_reference, hosted_checkout_url(order.checkout_reference)
                )
            if order.status != OrderStatus.AWAITING_PAYMENT.value:
                raise InvalidTransition(order_id, order.status, "sent to checkout")
            raise CheckoutInProgress(order_id)

        try:
            checkout = self.gateway.create_checkout(order.id, order.total, f"Order #{order.id}")
        except Exception:
            with db.transaction(self.session_factory) as session:
                repository.release_checkout(session, order_id, claimed_at)
            raise

        with db.transaction(self.session_factory) as session:
            stored = repository.store_checkout_reference(session, order_id, claimed_at, checkout.id)
        if not stored:
            logger.error(f"Checkout {checkout.id} for order {order_id} created after its reservation expired")
            raise CheckoutInProgress(order_id)

        logger.info(f"Checkout {checkout.id} created for order {order_id}")
        return CheckoutSession(order_id, checkout.id, checkout.url or hosted_checkout_url(checkout.id))

    # =====================
    # STAFF ACTIONS
    # =====================

    def accept_order(self, order_id: int, estimated_minutes: int) -> Order:
        if estimated_minutes is None or estimated_minutes <= 0:
            raise InvalidOrderRequest("Estimated minutes must be positive")
        order = self.transition(
            order_id,
            OrderStatus.CONFIRMED,
            sources={OrderStatus.PAYMENT_CONFIRMED},
            action="accepted",
            values={
                "estimated_ready_time": self.clock() + timedelta(minutes=estimated_minutes),
                "ready_at": None,
            },
        )
        logger.info(f"Order {order_id} accepted with {estimated_minutes} minute estimate")
        return order

    def update_estimate(self, order_id: int, estimated_minutes: int) -> Order:
        """Revise the ready-by time of an accepted order; the status stays as it is."""
        if estimated_minutes is None or estimated_minutes <= 0:
            raise InvalidOrderRequest("Estimated minutes must be positive")
        estimate = self.clock() + timedelta(minutes=estimated_minutes)

        with db.transaction(self.session_factory) as session:
            order = repository.get_for_update(session, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if OrderStatus(order.status) not in ESTIMATE_STATUSES:
                raise InvalidTransition(order_id, order.status, "re-estimated")
            if not repository.update_where_status(
                session, order_id, ESTIMATE_STATUSES, estimated_ready_time=estimate
            ):
                current = repository.get(session, order_id, fresh=True)
                raise InvalidTransition(order_id, current.status, "re-estimated")
            order = repository.get(session, order_id, fresh=True)

        logger.info(f"Order {order_id} estimate updated to {estimated_minutes} minutes")
        return order

    def decline_order(self, order_id: int) -> Order:
        return self.transition(
            order_id,
            OrderStatus.CANCELLED,
            sources={OrderStatus.PAYMENT_CONFIRMED, OrderStatus.CONFIRMED},
            action="declined",
        )

    def start_preparing(self, order_id: int) -> Order:
        return self.transition(order_id, OrderStatus.PREPARING, action="moved to preparation")

    def mark_ready(self, order_id: int) -> Order:
        order = self.get_order(order_id)
        if order.status == OrderStatus.READY.value:
            return order
        try:
            return self.transition(
                order_id, OrderStatus.READY, action="marked ready", values={"ready_at": self.clock()}
            )
        except InvalidTransition as e:
            if e.status == OrderStatus.READY.value:
                return self.get_order(order_id)
            raise

    def mark_picked_up(self, order_id: int) -> Order:
        def require_pickup(order: Order) -> None:
            if order.is_delivery:
                raise InvalidTransition(
                    order_id, order.status, "handed over", "delivery orders are completed by the driver"
                )

        return self.transition(
            order_id,
            OrderStatus.DELIVERED,
            sources={OrderStatus.READY},
            action="handed over",
            guard=require_pickup,
        )

    # =====================
    # REPEAT ORDER
    # =====================

    def repeat_order(self, order_id: int, user_id: int) -> RepeatOrderResult:
        order = self.get_order(order_id)
        if order.user_id is None or order.user_id != user_id:
            raise Forbidden("Not authorized to repeat this order")

        result = RepeatOrderResult()
        for item in order.items:
            current = self.catalog.get_item(item.menu_item_id)
            if current is not None and current.available:
                result.items.append(
                    RepeatItem(
                        menu_item_id=item.menu_item_id,
                        name=current.name,
                        price=current.price,
                        quantity=item.quantity,
                        customizations=item.customizations,
                    )
                )
            else:
                result.unavailable_items.append(item.name or f"Item #{item.menu_item_id}")

        if result.unavailable_items:
            result.message = (
                f"Some items are no longer available: {', '.join(result.unavailable_items)}. "
                "Available items are ready to be added to the cart."
            )
        else:
            result.message = "All items from your previous order are available and ready to be added to the cart."
        return result

    # =====================
    # LOYALTY
    # =====================

    def award_loyalty_points_if_eligible(self, order_id: int, user_id: int) -> int:
        """Settle ORDER_EARNED points for a paid order. Idempotent; never raises on ledger failure."""
        try:
            with db.transaction(self.session_factory) as session:
                order = repository.get(session, order_id)
                if order is None:
                    raise OrderNotFound(order_id)
                if OrderStatus(order.status) not in loyalty_eligible_statuses():
                    logger.info(f"Order {order_id} in {order.status} does not earn points yet")
                    return 0
                return self.ledger.award_if_eligible(session, order, user_id)
        except OrderNotFound:
            raise
        except Exception:
            logger.exception(f"Loyalty award for order {order_id} / user {user_id} failed")
            return 0
