import logging
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.core.errors import TicketNotFoundError, InvalidStatusTransitionError, DraftMissingError
from helpdesk.modules.audit.service import AuditService
from helpdesk.modules.tickets import status as st
from helpdesk.modules.tickets.models import Ticket
from helpdesk.modules.tickets.repository import TicketRepository, TicketMessageRepository, NlpResultRepository
from helpdesk.modules.tickets.schemas import OutboundMessageJob, OutboundOptions, ResolutionNotificationJob
from helpdesk.platform.ports.stream_bus import StreamBusPort
from helpdesk.platform import streams

log = logging.getLogger("tickets.service")

class TicketService:
    """Operator-side ticket operations.

    Every action goes through ``status.apply_status`` so operators and the
    pipeline share one status machine. Replies to the user are never sent from
    here; they are queued on ``outbound_messages`` once the status change is
    committed, and the sender worker records them in the history once delivered.
    """

    def __init__(self, session: AsyncSession, bus: StreamBusPort | None = None):
        self.session = session
        self.tickets = TicketRepository(session)
        self.messages = TicketMessageRepository(session)
        self.nlp_results = NlpResultRepository(session)
        self.audit = AuditService(session)
        self._bus = bus

    @property
    def bus(self) -> StreamBusPort:
        if self._bus is None:
            from helpdesk.platform.provider_registry import registry
            self._bus = registry.stream_bus()
        return self._bus

    # ---- Queries ----
    async def get_ticket(self, ticket_id: uuid.UUID) -> Ticket:
        obj = await self.tickets.get(ticket_id)
        if obj is None:
            raise TicketNotFoundError(ticket_id)
        return obj

    async def get_nlp_result(self, ticket_id: uuid.UUID):
        return await self.nlp_results.get_for_ticket(ticket_id)

    async def list_tickets(self, **filters):
        return await self.tickets.list(**filters)

    async def list_drafts(self, limit: int = 50, offset: int = 0):
        return await self.tickets.list(status=st.DRAFT_PENDING, limit=limit, offset=offset)

    async def list_messages(self, ticket_id: uuid.UUID):
        await self.get_ticket(ticket_id)
        return await self.messages.list_for_ticket(ticket_id)

    # ---- Draft review ----
    async def approve_draft(self, ticket_id: uuid.UUID, operator: str, text: str | None = None) -> Ticket:
        t = await self.get_ticket(ticket_id)
        if t.status != st.DRAFT_PENDING:
            raise InvalidStatusTransitionError(t.status, st.WAITING_USER)
        message = (text or t.suggested_response or "").strip()
        if not message:
            raise DraftMissingError(ticket_id)
        nlp = await self.nlp_results.get_for_ticket(ticket_id)

        edited = bool(text) and text.strip() != (t.suggested_response or "").strip()
        st.apply_status(t, st.WAITING_USER)
        t.assigned_to = t.assigned_to or operator
        await self.audit.log(t.id, operator, "draft_approved", {"edited": edited})
        await self.session.commit()
        await self._enqueue_outbound(t, message, OutboundOptions(
            is_auto_response=True,
            kb_refs=(nlp.kb_refs if nlp else None) or None,
        ))
        return t

    async def reject_draft(self, ticket_id: uuid.UUID, operator: str, reason: str | None = None) -> Ticket:
        t = await self.get_ticket(ticket_id)
        if t.status != st.DRAFT_PENDING:
            raise InvalidStatusTransitionError(t.status, st.IN_PROGRESS)
        st.apply_status(t, st.IN_PROGRESS)
        t.assigned_to = t.assigned_to or operator
        note = "Черновик ответа отклонён оператором."
        if reason:
            note = f"{note} Причина: {reason}"
        await self.messages.append(t.id, "system", note, sender_name=operator, is_internal=True)
        await self.audit.log(t.id, operator, "draft_rejected", {"reason": reason})
        await self.session.commit()
        return t

    # ---- Routing ----
    async def escalate(self, ticket_id: uuid.UUID, operator: str, reason: str | None = None) -> Ticket:
        t = await self.get_ticket(ticket_id)
        st.apply_status(t, st.ESCALATED)
        if t.priority != "critical":
            t.priority = "high"
        if reason:
            await self.messages.append(t.id, "system", f"Эскалация: {reason}", sender_name=operator, is_internal=True)
        await self.audit.log(t.id, operator, "escalated", {"reason": reason, "priority": t.priority})
        await self.session.commit()
        return t

    async def assign(self, ticket_id: uuid.UUID, operator: str, assignee: str) -> Ticket:
        t = await self.get_ticket(ticket_id)
        before = t.assigned_to
        t.assigned_to = assignee
        if t.status == st.NEW:
            st.apply_status(t, st.IN_PROGRESS)
        await self.audit.log(t.id, operator, "assigned", {"from": before, "to": assignee})
        await self.session.commit()
        return t

    async def reply(self, ticket_id: uuid.UUID, operator: str, text: str, send_to_user: bool = True) -> Ticket:
        t = await self.get_ticket(ticket_id)
        if t.status in st.TERMINAL_STATUSES and send_to_user:
            raise InvalidStatusTransitionError(t.status, st.WAITING_USER)
        if t.status == st.NEW:
            st.apply_status(t, st.IN_PROGRESS)
        if not send_to_user:
            await self.messages.append(t.id, "operator", text, sender_name=operator, is_internal=True)
            await self.session.commit()
            return t

        t.assigned_to = t.assigned_to or operator
        st.apply_status(t, st.WAITING_USER)
        await self.audit.log(t.id, operator, "operator_reply", {"length": len(text)})
        await self.session.commit()
        await self._enqueue_outbound(t, text, OutboundOptions(is_auto_response=False, operator_name=operator))
        return t

    # ---- Lifecycle ----
    async def resolve(self, ticket_id: uuid.UUID, operator: str, resolution_text: str | None = None, notify_user: bool = True) -> Ticket:
        t = await self.get_ticket(ticket_id)
        st.apply_status(t, st.RESOLVED)
        t.resolved_by = operator
        t.resolution_text = resolution_text
        await self.audit.log(t.id, operator, "resolved", {"notify_user": notify_user})
        await self.session.commit()
        if notify_user:
            job = ResolutionNotificationJob(ticket_id=t.id, resolution=resolution_text)
            await self.bus.append(streams.RESOLUTION_NOTIFICATIONS, job.to_payload())
        return t

    async def close(self, ticket_id: uuid.UUID, operator: str) -> Ticket:
        t = await self.get_ticket(ticket_id)
        st.apply_status(t, st.CLOSED)
        await self.audit.log(t.id, operator, "closed")
        await self.session.commit()
        return t

    async def reopen(self, ticket_id: uuid.UUID, operator: str, reason: str | None = None) -> Ticket:
        t = await self.get_ticket(ticket_id)
        if t.status not in st.TERMINAL_STATUSES:
            raise InvalidStatusTransitionError(t.status, st.IN_PROGRESS)
        st.apply_status(t, st.IN_PROGRESS)
        if reason:
            await self.messages.append(t.id, "system", f"Заявка переоткрыта: {reason}", sender_name=operator, is_internal=True)
        await self.audit.log(t.id, operator, "reopened", {"reason": reason})
        await self.session.commit()
        return t

    async def _enqueue_outbound(self, t: Ticket, message: str, options: OutboundOptions) -> str:
        job = OutboundMessageJob(
            ticket_id=t.id,
            source=t.source,
            source_id=t.source_conversation_id,
            message=message,
            options=options,
        )
        entry_id = await self.bus.append(streams.OUTBOUND_MESSAGES, job.to_payload())
        log.info(f"Queued outbound message for ticket {t.id} via {t.source} (entry {entry_id})")
        return entry_id
