import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from helpdesk.core.config import settings
from helpdesk.core.logging import setup_logging, log_ctx
from helpdesk.core.errors import (
    ConnectorNotFoundError, DraftMissingError, InvalidStatusTransitionError, TicketNotFoundError,
)
from helpdesk.api.router import api_router
from helpdesk.core.db import SessionLocal, init_models
from helpdesk.core.redis import redis_manager
from helpdesk.modules.connectors.registry import build_router, default_enabled
from helpdesk.modules.knowledge.setup import ensure_vector_indexes
from helpdesk.platform.provider_registry import registry
from helpdesk.workers.outbound_sender import OutboundSender

setup_logging()
logger = logging.getLogger("helpdesk.main")

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    await ensure_vector_indexes()
    await redis_manager.connect()
    bus = registry.stream_bus()

    connectors = build_router(SessionLocal, bus, cache=redis_manager)
    app.state.connector_router = connectors
    await connectors.start_all(enabled=default_enabled())

    # the sender shares this process's connectors (and the QR session they own)
    stop = asyncio.Event()
    app.state.sender_task = asyncio.create_task(OutboundSender(connectors).run(bus, stop), name="outbound-sender")
    try:
        yield
    finally:
        stop.set()
        try:
            await asyncio.wait_for(app.state.sender_task, timeout=settings.QUEUE_BLOCK_MS / 1000 + 5)
        except asyncio.TimeoutError:
            logger.warning("Outbound sender did not stop in time; cancelled")
        except Exception as e:
            logger.error(f"Outbound sender exited with error: {e}")
        await connectors.stop_all()
        await bus.close()
        await redis_manager.close()

app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:8]
    token = log_ctx.set(rid)
    try:
        response = await call_next(request)
    finally:
        log_ctx.reset(token)
    response.headers["x-request-id"] = rid
    return response

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    process_time = (time.time() - start_time) * 1000
    logger.info(
        f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {process_time:.2f}ms"
    )
    return response

@app.exception_handler(TicketNotFoundError)
async def ticket_not_found_handler(request: Request, exc: TicketNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(ConnectorNotFoundError)
async def connector_not_found_handler(request: Request, exc: ConnectorNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(InvalidStatusTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidStatusTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "current": exc.current, "target": exc.target})

@app.exception_handler(DraftMissingError)
async def draft_missing_handler(request: Request, exc: DraftMissingError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"message": "An internal server error occurred."},
    )

app.include_router(api_router, prefix=settings.API_PREFIX)
