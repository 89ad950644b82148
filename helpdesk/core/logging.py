import logging
from contextlib import contextmanager
from contextvars import ContextVar
from .config import settings

# request id (HTTP) or "<stream>:<entry>" / ticket id (workers)
log_ctx: ContextVar[str] = ContextVar("log_ctx", default="-")

_configured = False

def setup_logging():
    global _configured
    if _configured:
        return
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.ctx = log_ctx.get()
        return record

    logging.setLogRecordFactory(record_factory)

    level = logging.DEBUG if settings.ENV == "local" else logging.INFO
    if settings.LOG_LEVEL:
        level = logging.getLevelName(settings.LOG_LEVEL.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s [%(ctx)s] %(message)s",
    )
    # third-party clients are noisy at DEBUG
    for name in ("httpx", "httpcore", "telegram", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True

@contextmanager
def bind_log_context(value: str):
    token = log_ctx.set(value)
    try:
        yield
    finally:
        log_ctx.reset(token)
