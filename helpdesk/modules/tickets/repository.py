import uuid
from typing import Sequence
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.modules.tickets.models import ChannelUser, Ticket, TicketMessage, TicketNlpResult
from helpdesk.modules.tickets.status import TERMINAL_STATUSES, ACTIVE_STATUSES

class ChannelUserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_external(self, source: str, external_id: str) -> ChannelUser | None:
        q = select(ChannelUser).where(ChannelUser.source == source, ChannelUser.external_id == external_id)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_or_create(self, source: str, external_id: str, **profile) -> ChannelUser:
        obj = await self.get_by_external(source, external_id)
        if obj is None:
            obj = ChannelUser(source=source, external_id=external_id, **profile)
            self.session.add(obj)
        else:
            # refresh whatever the channel told us this time
            for k, v in profile.items():
                if v:
                    setattr(obj, k, v)
        await self.session.flush()
        return obj

class TicketRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **data) -> Ticket:
        obj = Ticket(**data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, ticket_id: uuid.UUID) -> Ticket | None:
        return await self.session.get(Ticket, ticket_id)

    async def find_open(self, source: str, source_id: str) -> Ticket | None:
        q = (
            select(Ticket)
            .where(
                Ticket.source == source,
                Ticket.source_conversation_id == source_id,
                Ticket.status.not_in(TERMINAL_STATUSES),
            )
            .order_by(Ticket.created_at.desc())
            .limit(1)
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def find_latest(self, source: str, source_id: str) -> Ticket | None:
        q = (
            select(Ticket)
            .where(Ticket.source == source, Ticket.source_conversation_id == source_id)
            .order_by(Ticket.created_at.desc())
            .limit(1)
        )
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list(self, *, status: str | None = None, source: str | None = None, category: str | None = None, priority: str | None = None, limit: int = 50, offset: int = 0) -> Sequence[Ticket]:
        conditions = []
        if status:   conditions.append(Ticket.status == status)
        if source:   conditions.append(Ticket.source == source)
        if category: conditions.append(Ticket.category == category)
        if priority: conditions.append(Ticket.priority == priority)
        q = select(Ticket).where(*conditions).order_by(Ticket.created_at.desc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_active_for_user(self, user_id: uuid.UUID, limit: int = 10) -> Sequence[Ticket]:
        q = (
            select(Ticket)
            .where(Ticket.user_id == user_id, Ticket.status.in_(ACTIVE_STATUSES))
            .order_by(Ticket.created_at.desc())
            .limit(limit)
        )
        res = await self.session.execute(q)
        return res.scalars().all()

class TicketMessageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, ticket_id: uuid.UUID, sender_type: str, content: str, **data) -> TicketMessage:
        obj = TicketMessage(ticket_id=ticket_id, sender_type=sender_type, content=content, **data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def list_for_ticket(self, ticket_id: uuid.UUID, *, include_internal: bool = True) -> Sequence[TicketMessage]:
        conditions = [TicketMessage.ticket_id == ticket_id]
        if not include_internal:
            conditions.append(TicketMessage.is_internal.is_(False))
        q = select(TicketMessage).where(*conditions).order_by(TicketMessage.created_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def count_for_ticket(self, ticket_id: uuid.UUID) -> int:
        q = select(func.count()).select_from(TicketMessage).where(TicketMessage.ticket_id == ticket_id)
        res = await self.session.execute(q)
        return int(res.scalar_one())

NLP_RESULT_FIELDS = (
    "language", "category", "category_confidence", "categories",
    "priority", "priority_confidence", "escalation_required",
    "triage_verdict", "triage_confidence", "kb_refs",
    "summary", "suggested_response", "decision", "processing_ms",
)

class NlpResultRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_ticket(self, ticket_id: uuid.UUID) -> TicketNlpResult | None:
        q = select(TicketNlpResult).where(TicketNlpResult.ticket_id == ticket_id)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def upsert(self, ticket_id: uuid.UUID, **data) -> TicketNlpResult:
        """Replace the ticket's result wholesale; fields not given are cleared."""
        unknown = set(data) - set(NLP_RESULT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown NLP result fields: {sorted(unknown)}")
        obj = await self.get_for_ticket(ticket_id)
        if obj is None:
            obj = TicketNlpResult(ticket_id=ticket_id)
            self.session.add(obj)
        for name in NLP_RESULT_FIELDS:
            default = False if name == "escalation_required" else None
            setattr(obj, name, data.get(name, default))
        await self.session.flush()
        return obj
