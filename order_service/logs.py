import contextvars
import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] [order-service] [cid=%(correlation_id)s] %(message)s"

correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    """Stamp the request's correlation id on records that were logged without one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id.get()
        return True


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"order-service.{component}")
