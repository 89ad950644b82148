"""HTTP surface: operator ticket endpoints, health and WhatsApp session endpoints."""
import uuid

import httpx
import pytest_asyncio

from helpdesk.core.db import get_session
from helpdesk.main import app
from helpdesk.modules.connectors.telegram import TelegramConnector
from helpdesk.modules.connectors.whatsapp import WhatsAppConnector
from helpdesk.modules.tickets import status as st
from helpdesk.platform import streams
from helpdesk.platform.provider_registry import ProviderRegistry

API = "/api/v1"


@pytest_asyncio.fixture
async def client(session_factory, bus, connectors, monkeypatch):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    monkeypatch.setattr(ProviderRegistry, "_stream_bus", bus)
    # lifespan does not run under ASGITransport
    app.state.connector_router = connectors
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    del app.state.connector_router


async def test_list_and_filter_tickets(client, make_ticket):
    await make_ticket(status=st.DRAFT_PENDING, suggested_response="Черновик")
    await make_ticket(status=st.IN_PROGRESS, source_conversation_id="456")

    resp = await client.get(f"{API}/tickets")
    assert resp.status_code == 200
    assert len(resp.json()) == 2

    drafts = (await client.get(f"{API}/tickets/drafts")).json()
    assert [t["status"] for t in drafts] == ["draft_pending"]

    resp = await client.get(f"{API}/tickets", params={"status": "bogus"})
    assert resp.status_code == 422


async def test_ticket_detail_and_unknown_ticket(client, make_ticket):
    ticket = await make_ticket()
    resp = await client.get(f"{API}/tickets/{ticket.id}")
    assert resp.status_code == 200
    body = resp.json()
    assert (body["id"], body["nlp"]) == (str(ticket.id), None)

    resp = await client.get(f"{API}/tickets/{uuid.uuid4()}")
    assert resp.status_code == 404


async def test_approve_action_queues_reply(client, bus, make_ticket):
    ticket = await make_ticket(status=st.DRAFT_PENDING, suggested_response="Сбросьте пароль на портале.")
    resp = await client.post(f"{API}/tickets/{ticket.id}/actions/approve")

    assert resp.status_code == 200
    assert resp.json()["status"] == "waiting_user"
    [job] = bus.entries(streams.OUTBOUND_MESSAGES)
    assert job["options"]["isAutoResponse"] is True


async def test_invalid_transition_is_conflict(client, make_ticket):
    ticket = await make_ticket(status=st.CLOSED)
    resp = await client.post(f"{API}/tickets/{ticket.id}/actions/escalate", json={"reason": "VIP"})

    assert resp.status_code == 409
    assert (resp.json()["current"], resp.json()["target"]) == ("closed", "escalated")


async def test_unknown_action_is_not_found(client, make_ticket):
    ticket = await make_ticket()
    resp = await client.post(f"{API}/tickets/{ticket.id}/actions/teleport")
    assert resp.status_code == 404


async def test_operator_reply_and_history(client, bus, make_ticket):
    ticket = await make_ticket(status=st.IN_PROGRESS)
    resp = await client.post(f"{API}/tickets/{ticket.id}/messages", json={"text": "Проверьте кабель", "send_to_user": False})
    assert resp.status_code == 200

    history = (await client.get(f"{API}/tickets/{ticket.id}/messages")).json()
    assert [(m["content"], m["is_internal"]) for m in history] == [("Проверьте кабель", True)]
    assert bus.entries(streams.OUTBOUND_MESSAGES) == []


async def test_health_reports_connectors(client, telegram):
    body = (await client.get(f"{API}/health")).json()
    assert body["status"] == "healthy"
    assert body["bus"] == "healthy"
    assert body["connectors"]["telegram"]["status"] == "running"

    telegram.running = False
    body = (await client.get(f"{API}/health")).json()
    assert body["status"] == "degraded"


async def test_whatsapp_endpoints_need_registered_connector(client):
    assert (await client.get(f"{API}/connectors/whatsapp/status")).status_code == 404


async def test_whatsapp_status_and_qr(client, connectors):
    wa = WhatsAppConnector(bridge_url="http://bridge", session_id="s1")
    connectors.register("whatsapp", wa)

    assert (await client.get(f"{API}/connectors/whatsapp/qr")).status_code == 404

    await wa.handle_event({"type": "qr", "qr": "2@abc"})
    status = (await client.get(f"{API}/connectors/whatsapp/status")).json()
    assert (status["connection_state"], status["has_qr"], status["is_connected"]) == ("awaiting_manual_auth", True, False)
    assert (await client.get(f"{API}/connectors/whatsapp/qr")).json()["qr"] == "2@abc"


async def test_connector_endpoints_without_running_connectors(client):
    del app.state.connector_router
    try:
        assert (await client.get(f"{API}/connectors/whatsapp/status")).status_code == 503
        assert (await client.get(f"{API}/health")).json()["connectors"] == {}
    finally:
        app.state.connector_router = None


async def test_telegram_webhook_checks_secret_header(client, connectors, monkeypatch):
    tg = TelegramConnector(token="123:abc", mode="webhook", webhook_url="https://hd.example/webhooks/telegram", webhook_secret="s3cret")
    updates = []

    async def record(data):
        updates.append(data)

    monkeypatch.setattr(tg, "process_webhook_update", record)
    connectors.register("telegram", tg)
    update = {"update_id": 1}

    assert (await client.post(f"{API}/webhooks/telegram", json=update)).status_code == 403
    resp = await client.post(f"{API}/webhooks/telegram", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": "guess"})
    assert resp.status_code == 403
    assert updates == []

    resp = await client.post(f"{API}/webhooks/telegram", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"})
    assert resp.status_code == 200
    assert updates == [update]
