import logging
from anthropic import AsyncAnthropic
from helpdesk.platform.ports.completion import CompletionPort
from helpdesk.core.config import settings

log = logging.getLogger("llm.anthropic")

class AnthropicCompletion(CompletionPort):
    def __init__(self, api_key: str | None = None, model: str | None = None):
        api_key = api_key or settings.ANTHROPIC_API_KEY
        if not api_key:
            raise RuntimeError("ANTHROPIC_API_KEY not configured")
        self.client = AsyncAnthropic(api_key=api_key, timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
        self.model = model or settings.ANTHROPIC_MODEL

    async def complete(self, prompt: str, *, system_prompt: str | None = None, max_tokens: int = 1000, temperature: float = 0.3) -> str:
        kwargs = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        response = await self.client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        log.debug(f"completion model={self.model} in={response.usage.input_tokens} out={response.usage.output_tokens}")
        return text
