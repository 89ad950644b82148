"""Connector router: inbound ticket creation, out-of-band signals and outbound dispatch."""
import asyncio
import uuid

import pytest
from sqlalchemy import select

from helpdesk.core.errors import ChannelSendError, ConnectorNotFoundError, TicketNotFoundError
from helpdesk.modules.audit.models import AuditEvent
from helpdesk.modules.connectors.events import ConfirmationEvent, FeedbackEvent, InboundEvent, StatusRequestEvent
from helpdesk.modules.connectors.registry import AUTO_CONFIRMED_TEXT, NO_TICKET_REPLY
from helpdesk.modules.tickets import status as st
from helpdesk.modules.tickets.models import ChannelUser, Ticket, TicketMessage
from helpdesk.modules.tickets.repository import TicketMessageRepository
from helpdesk.modules.tickets.schemas import Attachment, ChannelUserIn, InboundMessage
from helpdesk.platform import streams

from fakes import FakeConnector


def _inbound(body="VPN не работает", chat="123", **extra) -> InboundMessage:
    return InboundMessage(
        source="telegram",
        source_id=chat,
        user=ChannelUserIn(id=chat, name="Айгерим", username="aigerim"),
        subject=body[:100],
        body=body,
        **extra,
    )


async def _tickets(session_factory):
    async with session_factory() as s:
        return (await s.execute(select(Ticket))).scalars().all()


async def _messages(session_factory, ticket_id):
    async with session_factory() as s:
        return list(await TicketMessageRepository(s).list_for_ticket(ticket_id))


async def test_first_message_creates_ticket_and_queues_processing(connectors, session_factory, bus, telegram):
    ticket_id = await connectors.handle_incoming_message(_inbound())

    tickets = await _tickets(session_factory)
    assert len(tickets) == 1
    ticket = tickets[0]
    assert ticket.id == ticket_id
    assert ticket.status == st.NEW
    assert ticket.source == "telegram"
    assert ticket.subject == "VPN не работает"

    messages = await _messages(session_factory, ticket_id)
    assert [(m.sender_type, m.content) for m in messages] == [("user", "VPN не работает")]

    jobs = bus.entries(streams.TICKET_PROCESSING)
    assert jobs == [{"ticketId": str(ticket_id), "isNew": True, "source": "telegram", "timestamp": jobs[0]["timestamp"]}]

    # acknowledgement to the user
    assert len(telegram.sent) == 1
    assert telegram.sent[0]["to"] == "123"
    assert str(ticket_id)[:8] in telegram.sent[0]["text"]


async def test_second_message_appends_to_open_ticket(connectors, session_factory, bus, telegram):
    first = await connectors.handle_incoming_message(_inbound())
    second = await connectors.handle_incoming_message(_inbound("Пробовал перезагрузить, не помогло"))

    assert second == first
    assert len(await _tickets(session_factory)) == 1
    assert len(await _messages(session_factory, first)) == 2
    assert [j["isNew"] for j in bus.entries(streams.TICKET_PROCESSING)] == [True, False]
    # only the new ticket is acknowledged
    assert len(telegram.sent) == 1


async def test_channel_user_is_resolved_once(connectors, session_factory):
    await connectors.handle_incoming_message(_inbound())
    await connectors.handle_incoming_message(_inbound("ещё вопрос"))

    async with session_factory() as s:
        users = (await s.execute(select(ChannelUser))).scalars().all()
    assert len(users) == 1
    assert (users[0].source, users[0].external_id, users[0].username) == ("telegram", "123", "aigerim")


async def test_resolved_ticket_is_not_reused(connectors, session_factory, make_ticket):
    old = await make_ticket(status=st.RESOLVED)
    new_id = await connectors.handle_incoming_message(_inbound("Новая проблема"))

    assert new_id != old.id
    assert len(await _tickets(session_factory)) == 2


async def test_user_reply_moves_waiting_ticket_back_to_in_progress(connectors, session_factory, make_ticket):
    ticket = await make_ticket(status=st.WAITING_USER)
    await connectors.handle_incoming_message(_inbound("Всё ещё не работает"))

    async with session_factory() as s:
        assert (await s.get(Ticket, ticket.id)).status == st.IN_PROGRESS


async def test_attachments_round_trip(connectors, session_factory):
    attachment = Attachment(type="photo", url="https://files.example/1.jpg", mime_type="image/jpeg")
    ticket_id = await connectors.handle_incoming_message(_inbound("скрин ошибки", attachments=[attachment]))

    async with session_factory() as s:
        ticket = await s.get(Ticket, ticket_id)
        message = (await s.execute(select(TicketMessage))).scalars().one()
    assert (ticket.subject, ticket.body) == ("скрин ошибки", "скрин ошибки")
    assert message.attachments == [{"type": "photo", "url": "https://files.example/1.jpg", "mime_type": "image/jpeg"}]


async def test_ack_failure_does_not_block_ticket_creation(connectors, session_factory, telegram):
    telegram.fail_sends = True
    ticket_id = await connectors.handle_incoming_message(_inbound())

    assert ticket_id is not None
    assert len(await _tickets(session_factory)) == 1


async def test_mail_threading_metadata_is_merged(connectors, session_factory):
    email = FakeConnector("email")
    connectors.register("email", email)

    def mail(body, message_id):
        return InboundMessage(
            source="email", source_id="<root@mail.example>",
            user=ChannelUserIn(id="user@corp.example", email="user@corp.example"),
            subject="Почта", body=body, reply_to="user@corp.example",
            meta={"message_id": message_id, "references": ["<root@mail.example>"]},
        )

    ticket_id = await connectors.handle_incoming_message(mail("Не приходят письма", "<root@mail.example>"))
    await connectors.handle_incoming_message(mail("Уточнение", "<second@mail.example>"))

    async with session_factory() as s:
        ticket = await s.get(Ticket, ticket_id)
    assert ticket.reply_to == "user@corp.example"
    assert ticket.channel_meta["message_id"] == "<second@mail.example>"
    # the ack goes to the sender's address, not the thread key
    assert email.sent[0]["to"] == "user@corp.example"


async def test_dispatcher_consumes_connector_events(connectors, session_factory, telegram):
    connectors.start_dispatcher()
    await telegram.emit_message(_inbound())
    await asyncio.wait_for(connectors.events.join(), timeout=2)
    await connectors.stop_all(drain_timeout=1)

    assert len(await _tickets(session_factory)) == 1
    assert telegram.running is False


async def test_empty_message_is_dropped(connectors, telegram):
    assert await telegram.emit_message(_inbound("   ")) is False
    assert connectors.events.empty()


async def test_attachment_only_message_gets_placeholder(connectors, telegram):
    msg = _inbound("", attachments=[Attachment(type="voice", url="https://files.example/v.ogg")])
    assert await telegram.emit_message(msg) is True
    event = connectors.events.get_nowait()
    assert isinstance(event, InboundEvent)
    assert event.message.body == "[Голосовое сообщение]"


# ---- outbound ----

async def test_send_response_records_bot_message(connectors, session_factory, make_ticket, telegram):
    ticket = await make_ticket(status=st.WAITING_USER)
    result = await connectors.send_response(ticket.id, "Сбросьте пароль на портале", is_auto_response=True, kb_refs=[{"id": "a1"}])

    assert result == {"message_id": "m1"}
    assert "Сбросьте пароль на портале" in telegram.sent[0]["text"]
    messages = await _messages(session_factory, ticket.id)
    assert [(m.sender_type, m.content, m.channel_message_id) for m in messages] == [("bot", "Сбросьте пароль на портале", "m1")]


async def test_send_response_records_operator_message(connectors, session_factory, make_ticket, telegram):
    ticket = await make_ticket(status=st.WAITING_USER)
    await connectors.send_response(ticket.id, "Перезагрузите роутер", operator_name="Алия")

    assert "Алия" in telegram.sent[0]["text"]
    messages = await _messages(session_factory, ticket.id)
    assert (messages[0].sender_type, messages[0].sender_name) == ("operator", "Алия")


async def test_send_response_raises_for_unknown_ticket_or_channel(connectors, make_ticket):
    with pytest.raises(TicketNotFoundError):
        await connectors.send_response(uuid.uuid4(), "text")

    ticket = await make_ticket(source="whatsapp", source_conversation_id="77011234567@c.us")
    with pytest.raises(ConnectorNotFoundError):
        await connectors.send_response(ticket.id, "text")


async def test_failed_send_records_nothing(connectors, session_factory, make_ticket, telegram):
    ticket = await make_ticket(status=st.WAITING_USER)
    telegram.fail_sends = True
    with pytest.raises(ChannelSendError):
        await connectors.send_response(ticket.id, "text")
    assert await _messages(session_factory, ticket.id) == []


async def test_resolution_notification_uses_resolution_text(connectors, make_ticket, telegram):
    ticket = await make_ticket(status=st.RESOLVED, resolution_text="Пароль сброшен")
    await connectors.send_resolution_notification(ticket.id)
    assert "Пароль сброшен" in telegram.sent[0]["text"]


# ---- signals ----

async def test_feedback_appends_rating_message(connectors, session_factory, make_ticket):
    ticket = await make_ticket(status=st.RESOLVED)
    await connectors.handle_feedback(FeedbackEvent(source="telegram", source_id="123", rating=5, ticket_id=ticket.id, user_id="123"))

    messages = await _messages(session_factory, ticket.id)
    assert [(m.sender_type, m.content) for m in messages] == [("user", "Оценка: 5 ⭐")]


async def test_confirmation_yes_resolves_ticket(connectors, session_factory, make_ticket):
    ticket = await make_ticket(status=st.WAITING_USER)
    await connectors.handle_confirmation(ConfirmationEvent(source="telegram", source_id="123", confirmed=True, ticket_id=ticket.id, user_id="123"))

    async with session_factory() as s:
        t = await s.get(Ticket, ticket.id)
        actions = (await s.execute(select(AuditEvent.action))).scalars().all()
    assert t.status == st.RESOLVED
    assert t.resolved_by == "auto_confirmed"
    assert t.resolution_text == AUTO_CONFIRMED_TEXT
    assert t.resolved_at is not None
    assert actions == ["auto_confirmed"]


async def test_confirmation_no_returns_ticket_to_operator(connectors, session_factory, make_ticket):
    ticket = await make_ticket(status=st.WAITING_USER)
    await connectors.handle_confirmation(ConfirmationEvent(source="telegram", source_id="123", confirmed=False, ticket_id=ticket.id))

    async with session_factory() as s:
        assert (await s.get(Ticket, ticket.id)).status == st.IN_PROGRESS
    messages = await _messages(session_factory, ticket.id)
    assert messages[0].sender_type == "system"


async def test_confirmation_falls_back_to_latest_conversation_ticket(connectors, session_factory, make_ticket):
    ticket = await make_ticket(status=st.WAITING_USER)
    await connectors.handle_confirmation(ConfirmationEvent(source="telegram", source_id="123", confirmed=True))

    async with session_factory() as s:
        assert (await s.get(Ticket, ticket.id)).status == st.RESOLVED


async def test_signals_cannot_target_another_chats_ticket(connectors, session_factory, make_ticket, telegram):
    victim = await make_ticket(status=st.DRAFT_PENDING)
    own = await make_ticket(status=st.WAITING_USER, source_conversation_id="999")

    await connectors.handle_confirmation(ConfirmationEvent(source="telegram", source_id="999", confirmed=True, ticket_id=victim.id))
    await connectors.handle_feedback(FeedbackEvent(source="telegram", source_id="999", rating=1, ticket_id=victim.id))

    async with session_factory() as s:
        assert (await s.get(Ticket, victim.id)).status == st.DRAFT_PENDING
        # the reference is dropped in favour of the sender's own conversation
        assert (await s.get(Ticket, own.id)).status == st.RESOLVED
    assert await _messages(session_factory, victim.id) == []
    assert [m.content for m in await _messages(session_factory, own.id)] == ["Оценка: 1 ⭐"]


async def test_foreign_ticket_reference_without_own_ticket(connectors, session_factory, make_ticket, telegram):
    victim = await make_ticket(status=st.WAITING_USER)
    await connectors.handle_confirmation(ConfirmationEvent(source="telegram", source_id="999", confirmed=True, ticket_id=victim.id))

    async with session_factory() as s:
        assert (await s.get(Ticket, victim.id)).status == st.WAITING_USER
    assert telegram.sent == [{"to": "999", "text": NO_TICKET_REPLY}]


async def test_confirmation_without_ticket_gets_courtesy_reply(connectors, telegram):
    await connectors.handle_confirmation(ConfirmationEvent(source="telegram", source_id="999", confirmed=True))
    assert telegram.sent == [{"to": "999", "text": NO_TICKET_REPLY}]


async def test_status_request_lists_active_tickets(connectors, telegram):
    await connectors.handle_incoming_message(_inbound())
    telegram.sent.clear()

    await connectors.handle_status_request(StatusRequestEvent(source="telegram", source_id="123", user=ChannelUserIn(id="123")))
    assert "VPN не работает" in telegram.sent[0]["text"]


async def test_health_is_degraded_when_a_connector_is_down(connectors):
    down = FakeConnector("email")
    down.running = False
    down.last_error = "IMAP login failed"
    connectors.register("email", down)

    report = await connectors.health_check()
    assert report["overall"] == "degraded"
    assert report["connectors"]["telegram"]["status"] == "running"
    assert report["connectors"]["email"] == {"name": "email", "status": "unhealthy", "state": "connected", "error": "IMAP login failed"}
