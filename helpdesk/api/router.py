from fastapi import APIRouter
from helpdesk.modules.tickets.router import router as tickets_router
from helpdesk.modules.connectors.router import router as connectors_router
from helpdesk.modules.knowledge.router import router as knowledge_router
from helpdesk.modules.audit.router import router as audit_router

api_router = APIRouter()
api_router.include_router(tickets_router, tags=["tickets"])
api_router.include_router(knowledge_router, tags=["knowledge"])
api_router.include_router(audit_router, tags=["audit"])
# /health, /connectors/*, /webhooks/telegram
api_router.include_router(connectors_router, tags=["connectors"])
