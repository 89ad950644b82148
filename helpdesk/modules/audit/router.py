import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.core.db import get_session
from helpdesk.core.security import require_scopes
from helpdesk.modules.audit.service import AuditService

router = APIRouter()

@router.get("/audit", dependencies=[Depends(require_scopes("audit:read"))])
async def list_audit(
    ticket_id: uuid.UUID | None = None,
    action: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    rows = await AuditService(session).list(ticket_id=ticket_id, action=action, limit=limit)
    # Return raw dicts for simplicity
    return [
        {
            "id": row.id,
            "ticket_id": row.ticket_id,
            "actor": row.actor,
            "action": row.action,
            "payload": row.payload,
            "success": row.success,
            "occurred_at": row.occurred_at,
        }
        for row in rows
    ]
