from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [cid=%(correlation_id)s tenant=%(tenant_id)s] %(message)s"

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "pymongo", "asyncio")


class RequestContextFilter(logging.Filter):
    """Attach the correlation id and tenant of the current request to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get()
        if not hasattr(record, "tenant_id"):
            record.tenant_id = tenant_id_var.get()
        return True


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    from src.app.config import get_settings

    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_platform_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestContextFilter())
    handler._platform_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(logging.WARNING)

    logging.getLogger("src").setLevel(getattr(logging, resolved, logging.INFO))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
