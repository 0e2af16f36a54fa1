import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

# per-request / per-socket-message context
TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
USER_ID_CTX: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "celery.beat", "websockets")


class ContextFilter(logging.Filter):
    def filter(self, record):
        record.trace_id = TRACE_ID_CTX.get(None)
        record.user_id = USER_ID_CTX.get(None)
        return True


def setup_logging(level: int = logging.INFO, debug: bool = False):
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    fmt = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s %(user_id)s")
    handler.setFormatter(fmt)
    handler.addFilter(ContextFilter())
    root.setLevel(logging.DEBUG if debug else level)
    root.handlers = []
    root.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
