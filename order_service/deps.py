import uuid
from typing import Optional
from fastapi import Header

from . import db
from .catalog import CatalogClient
from .dispatch import DeliveryDispatch
from .lifecycle import OrderLifecycleEngine
from .logs import correlation_id
from .notifications import NotificationSender
from .payments import SumUpGateway


async def get_correlation_id(x_correlation_id: Optional[str] = Header(None)):
    # async so the context var is set in the request task and seen by threadpool endpoints
    cid = x_correlation_id or str(uuid.uuid4())
    correlation_id.set(cid)
    return cid


_lifecycle: Optional[OrderLifecycleEngine] = None


def get_lifecycle() -> OrderLifecycleEngine:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = OrderLifecycleEngine(
            session_factory=db.SessionLocal,
            catalog=CatalogClient(),
            gateway=SumUpGateway(),
            notifier=NotificationSender(),
        )
    return _lifecycle


def get_dispatch() -> DeliveryDispatch:
    return DeliveryDispatch(get_lifecycle())
