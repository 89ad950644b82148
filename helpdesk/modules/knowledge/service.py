import logging
from sqlalchemy.ext.asyncio import AsyncSession
from helpdesk.core.config import settings
from helpdesk.platform.provider_registry import registry
from helpdesk.modules.knowledge.repository import KnowledgeRepository
from helpdesk.modules.knowledge.models import KnowledgeChunk
from helpdesk.modules.knowledge.schemas import ArticleIngest

log = logging.getLogger("knowledge")

EXCERPT_CHARS = 500

def chunk_text(text: str, chunk_chars: int, overlap: int) -> list[str]:
    text = text or ""
    if len(text) <= chunk_chars:
        return [text]
    chunks: list[str] = []
    i = 0
    while i < len(text):
        chunks.append(text[i:i + chunk_chars])
        if i + chunk_chars >= len(text):
            break
        i += max(1, chunk_chars - overlap)
    return chunks

class KnowledgeService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.repo = KnowledgeRepository(session)
        self.embedder = registry.embeddings()

    async def ingest_article(self, payload: ArticleIngest) -> dict:
        fields = payload.model_dump(include={"title", "body", "language", "category", "is_published"})
        article = await self.repo.get_article(payload.id) if payload.id else None
        if article is None:
            if payload.id:
                fields["id"] = payload.id
            article = await self.repo.add_article(**fields)
        else:
            for k, v in fields.items():
                setattr(article, k, v)
            await self.repo.delete_chunks(article.id)

        # title is part of the first chunk so short articles still match on it
        pieces = chunk_text(f"{payload.title}\n\n{payload.body}", payload.chunk_chars, payload.overlap)
        vectors = await self.embedder.embed(pieces)
        await self.repo.insert_chunks([
            KnowledgeChunk(
                article_id=article.id,
                language=payload.language,
                category=payload.category,
                text=piece,
                chunk_index=i,
                embedding=vectors[i],
            )
            for i, piece in enumerate(pieces)
        ])
        await self.session.commit()
        log.info(f"Indexed article {article.id} ({len(pieces)} chunks)")
        return {"id": str(article.id), "indexed": len(pieces)}

    async def search_excerpts(self, query: str, *, language: str | None = None, category: str | None = None, limit: int = 5) -> list[dict]:
        """Best chunk per article above the score threshold, highest first."""
        vectors = await self.embedder.embed([query])
        hits = await self.repo.search_hybrid(vectors[0], query, top_k=limit * 4, language=language, category=category)
        best: dict[str, dict] = {}
        for chunk, title, score in hits:
            if score < settings.KB_SCORE_THRESHOLD:
                continue
            key = str(chunk.article_id)
            if key in best and best[key]["score"] >= score:
                continue
            best[key] = {
                "id": key,
                "title": title,
                "excerpt": chunk.text[:EXCERPT_CHARS],
                "score": round(score, 6),
            }
        return sorted(best.values(), key=lambda h: h["score"], reverse=True)[:limit]
