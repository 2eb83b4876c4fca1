from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from typing import List, Optional

from . import db, schemas
from .deps import get_correlation_id, get_dispatch, get_lifecycle
from .dispatch import DeliveryDispatch
from .errors import OrderNotFound, OrderServiceError
from .lifecycle import OrderLifecycleEngine, PaymentVerification
from .logs import configure_logging, correlation_id, get_logger
from .metrics import MetricsMiddleware, metrics_endpoint
from .status import OrderStatus

# ----- Logging -----
configure_logging()
logger = get_logger("api")

# ----- Init -----
db.init_db()
app = FastAPI(title="order-service", version="v1", dependencies=[Depends(get_correlation_id)])
app.add_middleware(MetricsMiddleware, service_name="order-service")


# ----- Error mapping -----
@app.exception_handler(OrderServiceError)
def handle_order_service_error(request: Request, exc: OrderServiceError):
    if not exc.public:
        logger.error(f"{request.method} {request.url.path} failed with {exc.code}: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content={
            "detail": {
                "code": exc.code,
                "message": exc.client_message(),
                "correlationId": correlation_id.get(),
            }
        },
    )


def _order(order) -> schemas.OrderRead:
    return schemas.OrderRead.model_validate(order)


def _verification(result: PaymentVerification) -> schemas.PaymentVerificationRead:
    return schemas.PaymentVerificationRead(
        order=_order(result.order),
        message=result.message,
        payment_state=result.payment_state.value if result.payment_state else None,
        loyalty_points_awarded=result.loyalty_points_awarded,
    )


# ----- Infra Endpoints -----
@app.get("/health")
def health():
    return {"status": "ok", "service": "order-service"}


@app.get("/metrics")
def metrics():
    return metrics_endpoint()


# ----- Orders -----
@app.post("/v1/orders", response_model=schemas.CreateOrderResponse, status_code=201)
def create_order(
    payload: schemas.CreateOrderRequest,
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    result = lifecycle.create_order(
        payload.items,
        total=payload.total,
        fulfillment_method=payload.fulfillment_method,
        delivery_address=payload.delivery_address,
        user_id=payload.user_id,
    )
    return schemas.CreateOrderResponse(order=_order(result.order), message=result.message)


@app.get("/v1/orders", response_model=List[schemas.OrderRead])
def list_orders(
    status: Optional[List[OrderStatus]] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=200),
    offset: Optional[int] = Query(None, ge=0),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    return [_order(o) for o in lifecycle.list_orders(status, limit, offset)]


@app.get("/v1/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return _order(lifecycle.get_order(order_id))


@app.get("/v1/orders/{order_id}/status", response_model=schemas.OrderStatusRead)
def get_order_status(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    view = lifecycle.get_order_status(order_id)
    return schemas.OrderStatusRead(order=_order(view.order), payment_check_deferred=view.payment_check_deferred)


@app.post("/v1/orders/{order_id}/repeat", response_model=schemas.RepeatOrderRead)
def repeat_order(
    order_id: int,
    x_user_id: int = Header(...),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    return schemas.RepeatOrderRead.model_validate(lifecycle.repeat_order(order_id, x_user_id))


# ----- Payment -----
@app.post("/v1/orders/{order_id}/checkout", response_model=schemas.CheckoutRead, status_code=201)
def initiate_checkout(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return schemas.CheckoutRead.model_validate(lifecycle.initiate_checkout(order_id))


@app.post("/v1/orders/{order_id}/verify-payment", response_model=schemas.PaymentVerificationRead)
def verify_payment(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return _verification(lifecycle.verify_payment(order_id))


@app.post("/v1/payments/webhook")
def payment_webhook(
    payload: schemas.PaymentWebhook,
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    try:
        result = lifecycle.verify_payment_by_reference(payload.id)
    except OrderNotFound:
        # not ours; acknowledge so the processor stops retrying
        logger.warning(f"Webhook for unknown checkout {payload.id}")
        return {"received": True, "orderId": None}
    return {"received": True, "orderId": result.order.id, "status": result.order.status}


# ----- Staff actions -----
@app.post("/v1/orders/{order_id}/accept", response_model=schemas.OrderRead)
def accept_order(
    order_id: int,
    payload: schemas.EstimateRequest,
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    return _order(lifecycle.accept_order(order_id, payload.estimated_minutes))


@app.post("/v1/orders/{order_id}/estimate", response_model=schemas.OrderRead)
def update_estimate(
    order_id: int,
    payload: schemas.EstimateRequest,
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    return _order(lifecycle.update_estimate(order_id, payload.estimated_minutes))


@app.post("/v1/orders/{order_id}/decline", response_model=schemas.OrderRead)
def decline_order(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return _order(lifecycle.decline_order(order_id))


@app.post("/v1/orders/{order_id}/preparing", response_model=schemas.OrderRead)
def start_preparing(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return _order(lifecycle.start_preparing(order_id))


@app.post("/v1/orders/{order_id}/ready", response_model=schemas.OrderRead)
def mark_ready(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return _order(lifecycle.mark_ready(order_id))


@app.post("/v1/orders/{order_id}/picked-up", response_model=schemas.OrderRead)
def mark_picked_up(order_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    return _order(lifecycle.mark_picked_up(order_id))


# ----- Users -----
@app.get("/v1/users/{user_id}/orders", response_model=List[schemas.OrderRead])
def list_user_orders(
    user_id: int,
    status: Optional[List[OrderStatus]] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=200),
    offset: Optional[int] = Query(None, ge=0),
    lifecycle: OrderLifecycleEngine = Depends(get_lifecycle),
):
    return [_order(o) for o in lifecycle.list_user_orders(user_id, status, limit, offset)]


@app.get("/v1/users/{user_id}/orders/last", response_model=Optional[schemas.OrderRead])
def get_last_order(user_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    order = lifecycle.get_last_order(user_id)
    return _order(order) if order is not None else None


@app.get("/v1/users/{user_id}/loyalty", response_model=schemas.LoyaltyRead)
def get_loyalty(user_id: int, lifecycle: OrderLifecycleEngine = Depends(get_lifecycle)):
    account = lifecycle.get_loyalty_account(user_id)
    if account is None:
        return schemas.LoyaltyRead(user_id=user_id)
    return schemas.LoyaltyRead.model_validate(account)


# ----- Driver -----
@app.get("/v1/driver/orders/ready", response_model=List[schemas.OrderRead])
def list_ready_deliveries(dispatch: DeliveryDispatch = Depends(get_dispatch)):
    return [_order(o) for o in dispatch.list_ready_deliveries()]


@app.get("/v1/driver/orders/active", response_model=List[schemas.OrderRead])
def list_active_deliveries(
    x_driver_id: int = Header(...),
    dispatch: DeliveryDispatch = Depends(get_dispatch),
):
    return [_order(o) for o in dispatch.list_active_deliveries(x_driver_id)]


@app.get("/v1/driver/orders/{order_id}", response_model=schemas.OrderRead)
def get_delivery_details(order_id: int, dispatch: DeliveryDispatch = Depends(get_dispatch)):
    return _order(dispatch.get_delivery_details(order_id))


@app.post("/v1/driver/orders/{order_id}/accept", response_model=schemas.OrderRead)
def accept_delivery(
    order_id: int,
    x_driver_id: int = Header(...),
    dispatch: DeliveryDispatch = Depends(get_dispatch),
):
    return _order(dispatch.accept_delivery(order_id, x_driver_id))


@app.post("/v1/driver/orders/{order_id}/deliver", response_model=schemas.OrderRead)
def mark_delivered(
    order_id: int,
    x_driver_id: int = Header(...),
    dispatch: DeliveryDispatch = Depends(get_dispatch),
):
    return _order(dispatch.mark_delivered(order_id, x_driver_id))


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run("order_service.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
