import pytest

from order_service.errors import InvalidTransition, OrderNotFound
from order_service.notifications import ORDER_STATUS_UPDATE
from order_service.status import OrderStatus

S = OrderStatus


def test_ready_deliveries_are_listed_oldest_first(dispatch, place_order, clock):
    first = place_order(S.READY, delivery=True)
    clock.advance(30)
    second = place_order(S.READY, delivery=True)
    place_order(S.READY)  # pickup
    place_order(S.PREPARING, delivery=True)

    assert [o.id for o in dispatch.list_ready_deliveries()] == [first.id, second.id]


def test_driver_takes_a_ready_delivery(dispatch, place_order, notifier):
    order = place_order(S.READY, delivery=True, user_id=7)

    taken = dispatch.accept_delivery(order.id, driver_id=50)

    assert taken.status == S.OUT_FOR_DELIVERY.value
    assert taken.driver_id == 50
    [(user_id, kind, payload)] = notifier.sent
    assert (user_id, kind) == (7, ORDER_STATUS_UPDATE)
    assert payload["status"] == S.OUT_FOR_DELIVERY.value
    assert payload["deliveryAddress"] == "12 Harbour Road"
    assert dispatch.list_ready_deliveries() == []


def test_pickup_orders_cannot_go_out_for_delivery(dispatch, lifecycle, place_order):
    order = place_order(S.READY)

    with pytest.raises(InvalidTransition, match="not a delivery order"):
        dispatch.accept_delivery(order.id, driver_id=50)
    assert lifecycle.get_order(order.id).status == S.READY.value


def test_only_ready_orders_can_be_taken(dispatch, place_order):
    order = place_order(S.PREPARING, delivery=True)

    with pytest.raises(InvalidTransition):
        dispatch.accept_delivery(order.id, driver_id=50)


def test_second_driver_loses_the_race(dispatch, place_order):
    order = place_order(S.READY, delivery=True)
    dispatch.accept_delivery(order.id, driver_id=50)

    with pytest.raises(InvalidTransition):
        dispatch.accept_delivery(order.id, driver_id=51)
    assert dispatch.get_delivery_details(order.id).driver_id == 50


def test_driver_is_never_notified_as_the_customer(dispatch, place_order, notifier):
    order = place_order(S.READY, delivery=True, user_id=50)

    dispatch.accept_delivery(order.id, driver_id=50)

    assert notifier.sent == []


def test_notification_failure_does_not_undo_the_delivery(dispatch, lifecycle, place_order, notifier):
    order = place_order(S.READY, delivery=True, user_id=7)
    notifier.fail = True

    dispatch.accept_delivery(order.id, driver_id=50)

    assert lifecycle.get_order(order.id).status == S.OUT_FOR_DELIVERY.value


def test_active_deliveries_belong_to_the_driver(dispatch, place_order):
    mine = place_order(S.READY, delivery=True)
    theirs = place_order(S.READY, delivery=True)
    dispatch.accept_delivery(mine.id, driver_id=50)
    dispatch.accept_delivery(theirs.id, driver_id=51)

    assert [o.id for o in dispatch.list_active_deliveries(50)] == [mine.id]
    assert [o.id for o in dispatch.list_active_deliveries(51)] == [theirs.id]


def test_delivery_completes_points_and_notifies(dispatch, lifecycle, place_order, notifier, ledger_entries):
    order = place_order(S.OUT_FOR_DELIVERY, delivery=True, user_id=7)

    delivered = dispatch.mark_delivered(order.id, driver_id=50)

    assert delivered.status == S.DELIVERED.value
    # points missed on the way are picked up on delivery
    assert len(ledger_entries(order.id)) == 1
    assert lifecycle.get_loyalty_account(7).points == 2
    assert notifier.sent[-1][2]["status"] == S.DELIVERED.value
    assert dispatch.list_active_deliveries(50) == []


def test_delivered_requires_out_for_delivery(dispatch, place_order):
    order = place_order(S.READY, delivery=True)

    with pytest.raises(InvalidTransition):
        dispatch.mark_delivered(order.id, driver_id=50)


def test_details_are_for_delivery_orders_only(dispatch, place_order):
    delivery = place_order(S.READY, delivery=True)
    pickup = place_order(S.READY)

    assert dispatch.get_delivery_details(delivery.id).delivery_address == "12 Harbour Road"
    with pytest.raises(OrderNotFound):
        dispatch.get_delivery_details(pickup.id)
