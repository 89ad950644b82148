from helpdesk.core.config import settings
from helpdesk.platform.ports.stream_bus import StreamBusPort
from helpdesk.platform.adapters.bus_memory import InMemoryStreamBus
from helpdesk.platform.adapters.bus_redis import RedisStreamBus
from helpdesk.platform.ports.completion import CompletionPort
from helpdesk.platform.ports.semantic_search import SemanticSearchPort
from helpdesk.platform.adapters.search_knowledge import KnowledgeBaseSearch
from helpdesk.platform.ports.embeddings import EmbeddingsPort
from helpdesk.platform.adapters.embeddings_hash import HashingEmbeddings

class ProviderRegistry:
    _stream_bus: StreamBusPort | None = None
    _completion: CompletionPort | None = None
    _semantic_search: SemanticSearchPort | None = None
    _embeddings: EmbeddingsPort | None = None

    @classmethod
    def stream_bus(cls) -> StreamBusPort:
        if cls._stream_bus is None:
            if settings.STREAM_BUS_PROVIDER == "memory":
                cls._stream_bus = InMemoryStreamBus()
            else:
                cls._stream_bus = RedisStreamBus()
        return cls._stream_bus

    @classmethod
    def completion(cls) -> CompletionPort:
        if cls._completion is None:
            if settings.LLM_PROVIDER == "openai":
                from helpdesk.platform.adapters.llm_openai import OpenAICompletion
                cls._completion = OpenAICompletion()
            else:
                from helpdesk.platform.adapters.llm_anthropic import AnthropicCompletion
                cls._completion = AnthropicCompletion()
        return cls._completion

    @classmethod
    def semantic_search(cls) -> SemanticSearchPort:
        if cls._semantic_search is None:
            from helpdesk.core.db import SessionLocal
            cls._semantic_search = KnowledgeBaseSearch(SessionLocal)
        return cls._semantic_search

    @classmethod
    def embeddings(cls) -> EmbeddingsPort:
        if cls._embeddings is None:
            # For now, only hashing is shipped. Add other adapters here.
            cls._embeddings = HashingEmbeddings(d=settings.EMBEDDINGS_DIM)
        return cls._embeddings

registry = ProviderRegistry()
