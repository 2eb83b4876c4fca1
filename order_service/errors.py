"""Typed failures raised by the order lifecycle engine.

Each error carries a stable ``code`` and the HTTP status the API layer
answers with. ``public`` errors are returned to the client verbatim; the
rest are logged with full context and rendered as an opaque message.
"""


class OrderServiceError(Exception):
    code = "ORDER_SERVICE_ERROR"
    http_status = 500
    public = False
    public_message = "The order service could not complete the request"

    def client_message(self) -> str:
        return str(self) if self.public else self.public_message


class InvalidOrderRequest(OrderServiceError):
    code = "INVALID_ORDER"
    http_status = 400
    public = True


class ItemUnavailable(OrderServiceError):
    code = "ITEM_UNAVAILABLE"
    http_status = 400
    public = True

    def __init__(self, menu_item_id: int, name: str | None = None):
        self.menu_item_id = menu_item_id
        self.name = name
        if name is None:
            message = f"Menu item with ID {menu_item_id} was not found"
        else:
            message = f'Menu item "{name}" is not available'
        super().__init__(message)


class OrderNotFound(OrderServiceError):
    code = "ORDER_NOT_FOUND"
    http_status = 404
    public = True

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidTransition(OrderServiceError):
    code = "INVALID_TRANSITION"
    http_status = 409
    public = True

    def __init__(self, order_id: int, status: str, action: str, reason: str | None = None):
        self.order_id = order_id
        self.status = status
        self.action = action
        message = f"Order {order_id} with status {status} cannot be {action}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class Forbidden(OrderServiceError):
    code = "FORBIDDEN"
    http_status = 403
    public = True


class CheckoutInProgress(OrderServiceError):
    code = "CHECKOUT_IN_PROGRESS"
    http_status = 409
    public = True

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"A checkout for order {order_id} is already being created")


class GatewayUnavailable(OrderServiceError):
    """Payment gateway unreachable or misbehaving. Safe to retry."""

    code = "GATEWAY_UNAVAILABLE"
    http_status = 503
    public_message = "Payment provider unavailable, please retry"


class CatalogUnavailable(OrderServiceError):
    code = "CATALOG_UNAVAILABLE"
    http_status = 502
    public_message = "Menu validation failed, please retry"


class StorageError(OrderServiceError):
    code = "STORAGE_ERROR"
    http_status = 500


class OrderCodeConflict(OrderServiceError):
    """Raised inside create_order when the order code unique constraint fires."""

    code = "ORDER_CODE_CONFLICT"

    def __init__(self, order_code: str):
        self.order_code = order_code
        super().__init__(f"Order code {order_code} already taken")
