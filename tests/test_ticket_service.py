"""Operator actions on tickets."""
import uuid

import pytest
from sqlalchemy import select

from helpdesk.core.errors import DraftMissingError, InvalidStatusTransitionError, TicketNotFoundError
from helpdesk.modules.audit.models import AuditEvent
from helpdesk.modules.tickets import status as st
from helpdesk.modules.tickets.repository import NlpResultRepository, TicketMessageRepository
from helpdesk.modules.tickets.service import TicketService
from helpdesk.platform import streams


async def _actions(session_factory, ticket_id):
    async with session_factory() as s:
        return (await s.execute(
            select(AuditEvent.action).where(AuditEvent.ticket_id == ticket_id).order_by(AuditEvent.occurred_at)
        )).scalars().all()


async def test_approve_draft_queues_auto_response(session_factory, bus, make_ticket):
    ticket = await make_ticket(status=st.DRAFT_PENDING, suggested_response="Сбросьте пароль на портале.")
    async with session_factory() as s:
        await NlpResultRepository(s).upsert(ticket.id, kb_refs=[{"id": "kb-vpn", "title": "VPN", "score": 0.8}])
        await s.commit()
        t = await TicketService(s, bus).approve_draft(ticket.id, "Алия")

    assert t.status == st.WAITING_USER
    assert t.assigned_to == "Алия"
    [job] = bus.entries(streams.OUTBOUND_MESSAGES)
    assert job["message"] == "Сбросьте пароль на портале."
    assert job["sourceId"] == "123"
    assert job["options"] == {"isAutoResponse": True, "kbRefs": [{"id": "kb-vpn", "title": "VPN", "score": 0.8}]}
    assert await _actions(session_factory, ticket.id) == ["draft_approved"]


async def test_approve_with_edited_text(session_factory, bus, make_ticket):
    ticket = await make_ticket(status=st.DRAFT_PENDING, suggested_response="Черновик")
    async with session_factory() as s:
        await TicketService(s, bus).approve_draft(ticket.id, "Алия", text="Исправленный ответ")
    assert bus.entries(streams.OUTBOUND_MESSAGES)[0]["message"] == "Исправленный ответ"


async def test_approve_requires_draft(session_factory, bus, make_ticket):
    pending = await make_ticket(status=st.DRAFT_PENDING)
    other = await make_ticket(status=st.IN_PROGRESS, source_conversation_id="456")
    async with session_factory() as s:
        service = TicketService(s, bus)
        with pytest.raises(DraftMissingError):
            await service.approve_draft(pending.id, "Алия")
        with pytest.raises(InvalidStatusTransitionError):
            await service.approve_draft(other.id, "Алия")
    assert bus.entries(streams.OUTBOUND_MESSAGES) == []


async def test_reject_draft_adds_internal_note(session_factory, bus, make_ticket):
    ticket = await make_ticket(status=st.DRAFT_PENDING, suggested_response="Черновик")
    async with session_factory() as s:
        t = await TicketService(s, bus).reject_draft(ticket.id, "Алия", reason="не про то")
        messages = await TicketMessageRepository(s).list_for_ticket(ticket.id)

    assert t.status == st.IN_PROGRESS
    assert messages[0].is_internal is True
    assert "не про то" in messages[0].content


async def test_escalate_raises_priority(session_factory, bus, make_ticket):
    ticket = await make_ticket(status=st.IN_PROGRESS)
    async with session_factory() as s:
        t = await TicketService(s, bus).escalate(ticket.id, "Алия", reason="VIP")
    assert (t.status, t.priority) == (st.ESCALATED, "high")


async def test_reply_to_new_ticket_goes_through_in_progress(session_factory, bus, make_ticket):
    ticket = await make_ticket()
    async with session_factory() as s:
        t = await TicketService(s, bus).reply(ticket.id, "Алия", "Уточните, пожалуйста, версию клиента")

    assert t.status == st.WAITING_USER
    [job] = bus.entries(streams.OUTBOUND_MESSAGES)
    assert job["options"] == {"isAutoResponse": False, "operatorName": "Алия"}


async def test_internal_note_is_not_sent(session_factory, bus, make_ticket):
    ticket = await make_ticket()
    async with session_factory() as s:
        t = await TicketService(s, bus).reply(ticket.id, "Алия", "проверить AD", send_to_user=False)
    assert t.status == st.IN_PROGRESS
    assert bus.entries(streams.OUTBOUND_MESSAGES) == []


async def test_resolve_close_reopen(session_factory, bus, make_ticket):
    ticket = await make_ticket(status=st.IN_PROGRESS)
    async with session_factory() as s:
        service = TicketService(s, bus)
        t = await service.resolve(ticket.id, "Алия", resolution_text="Пароль сброшен")
        assert (t.status, t.resolved_by) == (st.RESOLVED, "Алия")
        assert t.resolved_at is not None

        t = await service.close(ticket.id, "Алия")
        assert t.status == st.CLOSED

        t = await service.reopen(ticket.id, "Алия", reason="снова не работает")
        assert t.status == st.IN_PROGRESS
        assert t.resolved_at is None

    [note] = bus.entries(streams.RESOLUTION_NOTIFICATIONS)
    assert note == {"ticketId": str(ticket.id), "resolution": "Пароль сброшен"}
    assert await _actions(session_factory, ticket.id) == ["resolved", "closed", "reopened"]


async def test_reopen_requires_terminal_status(session_factory, bus, make_ticket):
    ticket = await make_ticket(status=st.IN_PROGRESS)
    async with session_factory() as s:
        with pytest.raises(InvalidStatusTransitionError):
            await TicketService(s, bus).reopen(ticket.id, "Алия")


async def test_unknown_ticket(session_factory, bus):
    async with session_factory() as s:
        with pytest.raises(TicketNotFoundError):
            await TicketService(s, bus).get_ticket(uuid.uuid4())


@pytest.mark.parametrize("action", ["approve", "reply", "resolve"])
async def test_nothing_is_queued_when_commit_fails(session_factory, bus, make_ticket, monkeypatch, action):
    ticket = await make_ticket(status=st.DRAFT_PENDING, suggested_response="Черновик")

    async def failing_commit():
        raise RuntimeError("database is locked")

    async with session_factory() as s:
        monkeypatch.setattr(s, "commit", failing_commit)
        service = TicketService(s, bus)
        with pytest.raises(RuntimeError):
            if action == "approve":
                await service.approve_draft(ticket.id, "Алия")
            elif action == "reply":
                await service.reply(ticket.id, "Алия", "Перезагрузите ноутбук")
            else:
                await service.resolve(ticket.id, "Алия", resolution_text="Готово")

    assert bus.entries(streams.OUTBOUND_MESSAGES) == []
    assert bus.entries(streams.RESOLUTION_NOTIFICATIONS) == []
