from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.core.db import get_session
from helpdesk.core.security import require_scopes
from helpdesk.modules.knowledge.service import KnowledgeService
from helpdesk.modules.knowledge.schemas import ArticleIngest, KnowledgeSearchQuery, KnowledgeHit

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session)) -> KnowledgeService:
    return KnowledgeService(session)

@router.post("/knowledge/articles", dependencies=[Depends(require_scopes("knowledge:write"))])
async def ingest_article(payload: ArticleIngest, service: KnowledgeService = Depends(svc)):
    return await service.ingest_article(payload)

@router.post("/knowledge/search", response_model=list[KnowledgeHit], dependencies=[Depends(require_scopes("knowledge:read"))])
async def search(payload: KnowledgeSearchQuery, service: KnowledgeService = Depends(svc)):
    return await service.search_excerpts(payload.q, language=payload.language, category=payload.category, limit=payload.limit)
