import logging
from openai import AsyncOpenAI
from helpdesk.platform.ports.completion import CompletionPort
from helpdesk.core.config import settings

log = logging.getLogger("llm.openai")

class OpenAICompletion(CompletionPort):
    def __init__(self, api_key: str | None = None, model: str | None = None, base_url: str | None = None):
        api_key = api_key or settings.OPENAI_API_KEY
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY not configured")
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or settings.OPENAI_BASE_URL,
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        )
        self.model = model or settings.OPENAI_MODEL

    async def complete(self, prompt: str, *, system_prompt: str | None = None, max_tokens: int = 1000, temperature: float = 0.3) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""
