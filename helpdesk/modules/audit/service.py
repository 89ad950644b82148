import json
import logging
import uuid
from typing import Sequence
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.modules.audit.models import AuditEvent

audit_log = logging.getLogger("audit")

class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(self,
                  ticket_id: uuid.UUID | None,
                  actor: str,
                  action: str,
                  payload: dict | None = None,
                  success: bool = True) -> AuditEvent:
        """Stage an audit row in the caller's transaction and mirror it to the ``audit`` logger."""
        ev = AuditEvent(ticket_id=ticket_id, actor=actor, action=action, payload=payload, success=success)
        self.session.add(ev)
        await self.session.flush()
        audit_log.info(
            f"{action} ticket={ticket_id} actor={actor} success={success} "
            f"payload={json.dumps(payload or {}, ensure_ascii=False, default=str)}"
        )
        return ev

    async def list(self, *, ticket_id: uuid.UUID | None = None, action: str | None = None, limit: int = 50) -> Sequence[AuditEvent]:
        q = select(AuditEvent)
        if ticket_id:
            q = q.where(AuditEvent.ticket_id == ticket_id)
        if action:
            q = q.where(AuditEvent.action == action)
        q = q.order_by(desc(AuditEvent.occurred_at)).limit(limit)
        res = await self.session.execute(q)
        return res.scalars().all()
