from typing import Protocol, runtime_checkable

@runtime_checkable
class CompletionPort(Protocol):
    async def complete(self, prompt: str, *, system_prompt: str | None = None, max_tokens: int = 1000, temperature: float = 0.3) -> str: ...
