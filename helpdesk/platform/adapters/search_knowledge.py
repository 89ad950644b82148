from sqlalchemy.ext.asyncio import async_sessionmaker
from helpdesk.platform.ports.semantic_search import SemanticSearchPort

class KnowledgeBaseSearch(SemanticSearchPort):
    """Semantic search backed by the knowledge module's pgvector chunks."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def search(self, query: str, *, language: str | None = None, category: str | None = None, limit: int = 5) -> list[dict]:
        from helpdesk.modules.knowledge.service import KnowledgeService

        async with self.session_factory() as session:
            return await KnowledgeService(session).search_excerpts(query, language=language, category=category, limit=limit)
