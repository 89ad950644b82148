import asyncio
import json
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from helpdesk.core.errors import ConnectorNotConfiguredError
from helpdesk.core.security import require_scopes
from helpdesk.modules.connectors.registry import ConnectorRouter
from helpdesk.modules.connectors.session import SessionState
from helpdesk.modules.connectors.telegram import TelegramConnector
from helpdesk.modules.connectors.whatsapp import WhatsAppConnector

router = APIRouter()

HEARTBEAT_SECONDS = 15.0
TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

class DisconnectIn(BaseModel):
    logout: bool = False

def get_connector_router(request: Request) -> ConnectorRouter:
    connectors = getattr(request.app.state, "connector_router", None)
    if connectors is None:
        raise HTTPException(status_code=503, detail="Connectors are not running")
    return connectors

def get_whatsapp(connectors: ConnectorRouter = Depends(get_connector_router)) -> WhatsAppConnector:
    wa = connectors.get("whatsapp")
    if not isinstance(wa, WhatsAppConnector):
        raise HTTPException(status_code=404, detail="WhatsApp connector is not registered")
    return wa

@router.get("/health", tags=["health"])
async def health(request: Request):
    connectors = getattr(request.app.state, "connector_router", None)
    out = {"status": "ok", "bus": "unknown", "connectors": {}}
    if connectors is not None:
        out["bus"] = "healthy" if await connectors.bus.ping() else "unhealthy"
        report = await connectors.health_check()
        out["connectors"] = report["connectors"]
        out["status"] = report["overall"]
        if out["bus"] != "healthy":
            out["status"] = "degraded"
    return out

# ---- WhatsApp session ----

def _status(wa: WhatsAppConnector) -> dict:
    snap = wa.session.snapshot()
    return {
        "connection_state": snap["state"],
        "is_connected": snap["state"] == SessionState.CONNECTED.value,
        "has_qr": bool(snap["qr"]),
        "identity": snap["identity"],
        "error": snap["error"] or wa.last_error,
        "updated_at": snap["updated_at"],
    }

@router.get("/connectors/whatsapp/status", dependencies=[Depends(require_scopes("connectors:read"))])
async def whatsapp_status(wa: WhatsAppConnector = Depends(get_whatsapp)):
    return _status(wa)

@router.get("/connectors/whatsapp/qr", dependencies=[Depends(require_scopes("connectors:read"))])
async def whatsapp_qr(wa: WhatsAppConnector = Depends(get_whatsapp)):
    if wa.state == SessionState.CONNECTED:
        return {"connection_state": wa.state.value, "qr": None, "message": "Already connected"}
    if not wa.session.qr:
        raise HTTPException(status_code=404, detail="No QR code available; start the connection first")
    return {"connection_state": wa.state.value, "qr": wa.session.qr}

@router.post("/connectors/whatsapp/connect", dependencies=[Depends(require_scopes("connectors:write"))])
async def whatsapp_connect(wa: WhatsAppConnector = Depends(get_whatsapp)):
    await wa.connect()
    return _status(wa)

@router.post("/connectors/whatsapp/disconnect", dependencies=[Depends(require_scopes("connectors:write"))])
async def whatsapp_disconnect(payload: DisconnectIn | None = None, wa: WhatsAppConnector = Depends(get_whatsapp)):
    await wa.disconnect(logout=bool(payload and payload.logout))
    return _status(wa)

@router.get("/connectors/whatsapp/events", dependencies=[Depends(require_scopes("connectors:read"))])
async def whatsapp_events(request: Request, wa: WhatsAppConnector = Depends(get_whatsapp)):
    queue = wa.broadcaster.subscribe()

    async def event_stream():
        try:
            while not await request.is_disconnected():
                try:
                    snap = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
                    continue
                yield "event: state\n"
                yield f"data: {json.dumps(snap, ensure_ascii=False)}\n\n"
        finally:
            wa.broadcaster.unsubscribe(queue)

    return StreamingResponse(event_stream(), media_type="text/event-stream")

# ---- Telegram webhook ----

@router.post("/webhooks/telegram")
async def telegram_webhook(request: Request, connectors: ConnectorRouter = Depends(get_connector_router)):
    tg = connectors.get("telegram")
    if not isinstance(tg, TelegramConnector):
        raise HTTPException(status_code=404, detail="Telegram connector is not registered")
    if not tg.verify_webhook_secret(request.headers.get(TELEGRAM_SECRET_HEADER)):
        raise HTTPException(status_code=403, detail="Invalid webhook secret")
    try:
        await tg.process_webhook_update(await request.json())
    except ConnectorNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True}
