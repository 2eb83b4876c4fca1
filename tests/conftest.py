import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("NOTIFICATION_SERVICE_URL", "")

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from order_service import db
from order_service.catalog import CatalogItem
from order_service.dispatch import DeliveryDispatch
from order_service.lifecycle import OrderLifecycleEngine
from order_service.models import Order, PointsTransaction
from order_service.payments import Checkout
from order_service.schemas import OrderItemRequest
from order_service.status import FulfillmentMethod, OrderStatus


# ── Shared stubs ───────────────────────────────────────────────

class FakeCatalog:
    def __init__(self):
        self.items = {}

    def add(self, item_id, name, price, available=True):
        self.items[item_id] = CatalogItem(item_id, name, Decimal(price), available)

    def get_item(self, item_id):
        return self.items.get(item_id)


class FakeGateway:
    def __init__(self):
        self.statuses = {}
        self.error = None
        self.status_calls = []
        self.created = []
        self.before_status = None  # one-shot hook, runs before the answer

    def get_checkout_status(self, checkout_id):
        self.status_calls.append(checkout_id)
        if self.before_status is not None:
            hook, self.before_status = self.before_status, None
            hook(checkout_id)
        if self.error is not None:
            raise self.error
        return {"id": checkout_id, "status": self.statuses.get(checkout_id, "PENDING")}

    def create_checkout(self, order_id, amount, description):
        if self.error is not None:
            raise self.error
        checkout_id = f"chk-{order_id}-{len(self.created) + 1}"
        self.created.append((order_id, amount, description))
        return Checkout(id=checkout_id, url=f"https://pay.test/{checkout_id}", reference=f"ORDER-{order_id}")


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, user_id, kind, payload):
        if self.fail:
            raise RuntimeError("push provider down")
        self.sent.append((user_id, kind, payload))


class Clock:
    def __init__(self, start=datetime(2026, 3, 1, 12, 0, 0)):
        self.now = start

    def advance(self, seconds=1):
        self.now += timedelta(seconds=seconds)

    def __call__(self):
        return self.now


def line(menu_item_id, quantity=1, price=None, customizations=None):
    return OrderItemRequest(
        menu_item_id=menu_item_id, quantity=quantity, price=price, customizations=customizations
    )


# ── Fixtures ───────────────────────────────────────────────────

@pytest.fixture
def session_factory():
    engine = db.make_engine("sqlite://")
    db.init_db(engine)
    yield db.make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def catalog():
    c = FakeCatalog()
    c.add(1, "Burger", "9.00")
    c.add(2, "Fries", "3.50")
    c.add(3, "Milkshake", "4.00", available=False)
    c.add(4, "Combo", "10.00")
    return c


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def lifecycle(session_factory, catalog, gateway, notifier, clock):
    return OrderLifecycleEngine(
        session_factory=session_factory,
        catalog=catalog,
        gateway=gateway,
        notifier=notifier,
        auto_accept=False,
        clock=clock,
    )


@pytest.fixture
def dispatch(lifecycle):
    return DeliveryDispatch(lifecycle)


@pytest.fixture
def force_status(session_factory):
    """Put an order straight into a status, bypassing the state machine."""

    def _force(order_id, status, **values):
        values["status"] = OrderStatus(status).value
        with db.transaction(session_factory) as session:
            session.query(Order).filter(Order.id == order_id).update(values, synchronize_session=False)

    return _force


@pytest.fixture
def place_order(lifecycle, force_status):
    """Create an order (2 x Combo = 20.00) and optionally move it to ``status``."""

    def _place(status=OrderStatus.AWAITING_PAYMENT, delivery=False, user_id=None, checkout_reference=None):
        result = lifecycle.create_order(
            [line(4, 2)],
            fulfillment_method=FulfillmentMethod.DELIVERY if delivery else FulfillmentMethod.PICKUP,
            delivery_address="12 Harbour Road" if delivery else None,
            user_id=user_id,
        )
        order_id = result.order.id
        extra = {}
        if checkout_reference:
            extra["checkout_reference"] = checkout_reference
        if status != OrderStatus.AWAITING_PAYMENT or extra:
            force_status(order_id, status, **extra)
        return lifecycle.get_order(order_id)

    return _place


@pytest.fixture
def ledger_entries(session_factory):
    def _entries(order_id):
        with db.read_session(session_factory) as session:
            return session.query(PointsTransaction).filter(PointsTransaction.order_id == order_id).all()

    return _entries
