import uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Integer, ForeignKey, Boolean
from pgvector.sqlalchemy import Vector
from helpdesk.core.base import Base, TimestampedMixin
from helpdesk.core.config import settings

class KnowledgeArticle(Base, TimestampedMixin):
    title: Mapped[str] = mapped_column(String(500))
    body: Mapped[str] = mapped_column(Text)
    language: Mapped[str] = mapped_column(String(8), default="ru")
    category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True)

class KnowledgeChunk(Base, TimestampedMixin):
    """
    Indexable slice of an article with its vector; FTS runs over ``text``.
    Language and category are denormalized so search can filter without a join.
    """
    article_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("knowledgearticle.id", ondelete="CASCADE"), index=True)
    language: Mapped[str] = mapped_column(String(8))
    category: Mapped[str | None] = mapped_column(String(32), nullable=True)
    text: Mapped[str] = mapped_column(Text)
    chunk_index: Mapped[int] = mapped_column(Integer, default=0)

    embedding: Mapped[list[float]] = mapped_column(Vector(dim=settings.EMBEDDINGS_DIM))
