from typing import Protocol, runtime_checkable

@runtime_checkable
class SemanticSearchPort(Protocol):
    """Ranked knowledge-base excerpts: ``[{id, title, excerpt, score}]``."""

    async def search(self, query: str, *, language: str | None = None, category: str | None = None, limit: int = 5) -> list[dict]: ...
