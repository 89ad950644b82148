import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, TIMESTAMP, JSON, Boolean
from helpdesk.core.base import Base, TimestampedMixin, utcnow

class AuditEvent(Base, TimestampedMixin):
    ticket_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    # who: "system", "processor", "user:<external id>", operator name
    actor: Mapped[str] = mapped_column(String(128))
    # what: nlp_processed, nlp_escalated, nlp_error, draft_approved, resolved, ...
    action: Mapped[str] = mapped_column(String(48))
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    occurred_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), default=utcnow)
