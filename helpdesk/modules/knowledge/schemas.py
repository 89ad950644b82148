import uuid
from pydantic import BaseModel, Field

class ArticleIngest(BaseModel):
    id: uuid.UUID | None = None  # re-index an existing article when given
    title: str
    body: str
    language: str = Field(default="ru", pattern="^(ru|kz|en)$")
    category: str | None = None
    is_published: bool = True
    chunk_chars: int = Field(default=1000, ge=200, le=4000)
    overlap: int = Field(default=150, ge=0, le=1000)

class KnowledgeSearchQuery(BaseModel):
    q: str
    language: str | None = Field(default=None, pattern="^(ru|kz|en)$")
    category: str | None = None
    limit: int = Field(default=5, ge=1, le=50)

class KnowledgeHit(BaseModel):
    id: str
    title: str
    excerpt: str
    score: float
