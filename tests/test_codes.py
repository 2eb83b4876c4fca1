import random
import re

from order_service import db
from order_service.codes import (
    MAX_ATTEMPTS,
    ORDER_CODE_ALPHABET,
    OrderCodeGenerator,
    is_well_formed,
)
from order_service.lifecycle import OrderLifecycleEngine
from order_service.models import Order
from order_service.status import FulfillmentMethod

from conftest import line

CODE_RE = re.compile(f"^[{ORDER_CODE_ALPHABET}]{{6}}$")


def test_codes_avoid_confusable_characters():
    gen = OrderCodeGenerator(exists=lambda code: False, rng=random.Random(7))
    for _ in range(500):
        code = gen.generate()
        assert CODE_RE.match(code)
        assert not set(code) & set("0O1IL")


def test_ten_thousand_codes_are_unique():
    issued = set()
    gen = OrderCodeGenerator(exists=issued.__contains__, rng=random.Random(42))
    for _ in range(10_000):
        issued.add(gen.generate())
    assert len(issued) == 10_000


def test_retries_until_a_free_code():
    taken = []

    def exists(code):
        taken.append(code)
        return len(taken) <= 3

    gen = OrderCodeGenerator(exists=exists, rng=random.Random(1))
    code = gen.generate()
    assert len(taken) == 4
    assert code == taken[-1]
    assert CODE_RE.match(code)


def test_falls_back_to_timestamp_code_when_every_attempt_collides():
    calls = []

    def always_taken(code):
        calls.append(code)
        return True

    gen = OrderCodeGenerator(exists=always_taken, rng=random.Random(3), clock=lambda: 1700000123.0)
    code = gen.generate()

    assert len(calls) == MAX_ATTEMPTS
    assert code == "SM123000"
    assert is_well_formed(code)
    # fallback codes are longer than random ones, so they never equal one
    assert code not in calls


def test_is_well_formed():
    assert is_well_formed("ABC234")
    assert is_well_formed("SM000123")
    assert not is_well_formed("ABC0O1")
    assert not is_well_formed("SMABCDEF")
    assert not is_well_formed("ABC23")


class ScriptedCodes:
    def __init__(self, *codes):
        self.codes = list(codes)

    def generate(self):
        return self.codes.pop(0)


def test_storage_constraint_catches_code_race(session_factory, catalog, gateway, notifier, clock):
    # the existence check said "free" but another order already holds the code
    engine = OrderLifecycleEngine(
        session_factory, catalog, gateway, notifier, codes=ScriptedCodes("AAAAAA", "AAAAAA", "BBBBBB"), clock=clock
    )
    first = engine.create_order([line(1)], fulfillment_method=FulfillmentMethod.DELIVERY, delivery_address="1 Quay St")
    second = engine.create_order([line(1)], fulfillment_method=FulfillmentMethod.DELIVERY, delivery_address="2 Quay St")

    assert first.order.order_code == "AAAAAA"
    assert second.order.order_code == "BBBBBB"
    with db.read_session(session_factory) as session:
        assert session.query(Order).count() == 2
