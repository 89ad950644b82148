import uuid
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.core.db import get_session
from helpdesk.core.security import require_scopes, Principal
from helpdesk.modules.tickets.schemas import (
    TicketOut, TicketDetailOut, NlpResultOut, MessageOut, TicketAction, OperatorMessageIn
)
from helpdesk.modules.tickets.service import TicketService
from helpdesk.modules.tickets.status import ALL_STATUSES

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> TicketService:
    return TicketService(session)

_STATUS_PATTERN = "^(" + "|".join(ALL_STATUSES) + ")$"

@router.get("/tickets", response_model=list[TicketOut], dependencies=[Depends(require_scopes("tickets:read"))])
async def list_tickets(
    status: str | None = Query(default=None, pattern=_STATUS_PATTERN),
    source: str | None = Query(default=None, pattern="^(telegram|whatsapp|email)$"),
    category: str | None = None,
    priority: str | None = Query(default=None, pattern="^(critical|high|medium|low)$"),
    limit: int = Query(50, ge=1, le=200), offset: int = 0,
    service: TicketService = Depends(svc),
):
    return await service.list_tickets(status=status, source=source, category=category, priority=priority, limit=limit, offset=offset)

@router.get("/tickets/drafts", response_model=list[TicketOut], dependencies=[Depends(require_scopes("tickets:read"))])
async def list_drafts(
    limit: int = Query(50, ge=1, le=200), offset: int = 0,
    service: TicketService = Depends(svc),
):
    return await service.list_drafts(limit=limit, offset=offset)

@router.get("/tickets/{ticket_id}", response_model=TicketDetailOut, dependencies=[Depends(require_scopes("tickets:read"))])
async def get_ticket(ticket_id: uuid.UUID, service: TicketService = Depends(svc)):
    obj = await service.get_ticket(ticket_id)
    nlp = await service.get_nlp_result(ticket_id)
    out = TicketDetailOut.model_validate(obj)
    out.nlp = NlpResultOut.model_validate(nlp) if nlp else None
    return out

@router.get("/tickets/{ticket_id}/messages", response_model=list[MessageOut], dependencies=[Depends(require_scopes("tickets:read"))])
async def list_messages(ticket_id: uuid.UUID, service: TicketService = Depends(svc)):
    return await service.list_messages(ticket_id)

@router.post("/tickets/{ticket_id}/messages", response_model=TicketOut)
async def post_message(
    ticket_id: uuid.UUID,
    payload: OperatorMessageIn,
    principal: Principal = Depends(require_scopes("tickets:write")),
    service: TicketService = Depends(svc),
):
    return await service.reply(ticket_id, principal.name, payload.text, send_to_user=payload.send_to_user)

@router.post("/tickets/{ticket_id}/actions/{action}", response_model=TicketOut)
async def ticket_action(
    ticket_id: uuid.UUID,
    action: str,
    payload: TicketAction | None = None,
    principal: Principal = Depends(require_scopes("tickets:write")),
    service: TicketService = Depends(svc),
):
    payload = payload or TicketAction()
    operator = principal.name
    if action == "approve":
        return await service.approve_draft(ticket_id, operator, text=payload.text)
    if action == "reject":
        return await service.reject_draft(ticket_id, operator, reason=payload.reason)
    if action == "escalate":
        return await service.escalate(ticket_id, operator, reason=payload.reason)
    if action == "assign":
        return await service.assign(ticket_id, operator, payload.assignee or operator)
    if action == "resolve":
        return await service.resolve(ticket_id, operator, resolution_text=payload.text, notify_user=payload.notify_user)
    if action == "close":
        return await service.close(ticket_id, operator)
    if action == "reopen":
        return await service.reopen(ticket_id, operator, reason=payload.reason)
    raise HTTPException(status_code=404, detail=f"Unknown action '{action}'")
