import uuid
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, and_, func, literal, desc
from helpdesk.modules.knowledge.models import KnowledgeArticle, KnowledgeChunk

class KnowledgeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_article(self, article_id: uuid.UUID) -> KnowledgeArticle | None:
        return await self.session.get(KnowledgeArticle, article_id)

    async def find_by_title(self, title: str, language: str) -> KnowledgeArticle | None:
        res = await self.session.execute(
            select(KnowledgeArticle).where(KnowledgeArticle.title == title, KnowledgeArticle.language == language)
        )
        return res.scalars().first()

    async def add_article(self, **data) -> KnowledgeArticle:
        obj = KnowledgeArticle(**data)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def delete_chunks(self, article_id: uuid.UUID) -> None:
        await self.session.execute(delete(KnowledgeChunk).where(KnowledgeChunk.article_id == article_id))

    async def insert_chunks(self, objs: list[KnowledgeChunk]) -> None:
        self.session.add_all(objs)
        await self.session.flush()

    async def search_hybrid(self, query_vec: list[float], query_text: str, *, top_k: int = 10, language: str | None = None, category: str | None = None) -> Sequence[tuple[KnowledgeChunk, str, float]]:
        conds = [KnowledgeArticle.is_published.is_(True)]
        if language:
            conds.append(KnowledgeChunk.language == language)
        if category:
            conds.append(KnowledgeChunk.category == category)

        # vector distance (smaller is closer)
        dist = KnowledgeChunk.embedding.l2_distance(query_vec)

        # FTS rank
        tsvec = func.to_tsvector(literal("simple"), KnowledgeChunk.text)
        tsq = func.plainto_tsquery(literal("simple"), query_text)
        rank = func.ts_rank_cd(tsvec, tsq)

        # Hybrid score: sim from dist + weighted FTS rank
        score = ((1.0 / (1.0 + dist)) + (rank * 0.3)).label("score")

        q = (
            select(KnowledgeChunk, KnowledgeArticle.title, score)
            .join(KnowledgeArticle, KnowledgeArticle.id == KnowledgeChunk.article_id)
            .where(and_(*conds))
            .order_by(desc(score))
            .limit(top_k)
        )
        res = await self.session.execute(q)
        return [(row[0], row[1], float(row[2])) for row in res.all()]
