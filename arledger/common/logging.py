"""Structured JSON logging with request/event context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
ar_id_ctx: ContextVar[str] = ContextVar("ar_id", default="")
alert_id_ctx: ContextVar[str] = ContextVar("alert_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.trace_id = trace_id_ctx.get()
        record.event_id = event_id_ctx.get()
        record.ar_id = ar_id_ctx.get()
        record.alert_id = alert_id_ctx.get()
        return True


def configure_logging(service_name: str, level: str = "INFO") -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter(service_name)
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(event_id)s "
        "%(ar_id)s %(alert_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    root.addFilter(context_filter)


logger = logging.getLogger("arledger")
