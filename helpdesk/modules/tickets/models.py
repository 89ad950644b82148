import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Float, ForeignKey, TIMESTAMP, JSON, Boolean, Integer, Index, UniqueConstraint
from helpdesk.core.base import Base, TimestampedMixin

# ---- Channel identities ----

class ChannelUser(Base, TimestampedMixin):
    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_channeluser_source_external"),)

    source: Mapped[str] = mapped_column(String(32))  # telegram, whatsapp, email
    external_id: Mapped[str] = mapped_column(String(255))  # chat id, phone, email address
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    language_code: Mapped[str | None] = mapped_column(String(16), nullable=True)

# ---- Tickets ----

class Ticket(Base, TimestampedMixin):
    __table_args__ = (Index("ix_ticket_source_conversation", "source", "source_conversation_id", "status"),)

    user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("channeluser.id"), nullable=True)

    # Channel routing
    source: Mapped[str] = mapped_column(String(32))
    source_conversation_id: Mapped[str] = mapped_column(String(255))  # thread key / chat id
    reply_to: Mapped[str | None] = mapped_column(String(255), nullable=True)  # transport address when it differs from the thread key
    channel_meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # e.g. {"message_id": "<...>"} for mail threading

    subject: Mapped[str] = mapped_column(String(500))
    body: Mapped[str] = mapped_column(Text)
    language: Mapped[str | None] = mapped_column(String(8), nullable=True)  # ru, kz, en

    # Pipeline output
    category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    priority: Mapped[str] = mapped_column(String(16), default="medium")  # critical, high, medium, low
    priority_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    triage_verdict: Mapped[str | None] = mapped_column(String(32), nullable=True)  # auto_resolvable, manual
    triage_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    suggested_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), default="new")  # see tickets.status
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolution_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

class TicketMessage(Base, TimestampedMixin):
    ticket_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("ticket.id"), index=True)
    sender_type: Mapped[str] = mapped_column(String(16))  # user, bot, operator, system
    sender_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sender_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content: Mapped[str] = mapped_column(Text)
    attachments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False)  # operator notes never leave the desk
    channel_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

class TicketNlpResult(Base, TimestampedMixin):
    ticket_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("ticket.id"), unique=True)

    language: Mapped[str | None] = mapped_column(String(8), nullable=True)
    category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    categories: Mapped[list | None] = mapped_column(JSON, nullable=True)  # top predictions [{code, confidence}]
    priority: Mapped[str | None] = mapped_column(String(16), nullable=True)
    priority_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    escalation_required: Mapped[bool] = mapped_column(Boolean, default=False)
    triage_verdict: Mapped[str | None] = mapped_column(String(32), nullable=True)
    triage_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    kb_refs: Mapped[list | None] = mapped_column(JSON, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    decision: Mapped[str | None] = mapped_column(String(48), nullable=True)  # which status rule fired
    processing_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
