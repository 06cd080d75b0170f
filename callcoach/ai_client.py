"""
CallCoach Completion client
Claude messages API behind the Completion capability:
complete(system_prompt, user_prompt, schema_hint) -> raw text
"""

import asyncio
import logging
from typing import Optional

from anthropic import Anthropic, APIError

from .config import settings
from .exceptions import CompletionError

logger = logging.getLogger(__name__)


JSON_ONLY_INSTRUCTION = """
## FORMATO DE RESPOSTA
Responda APENAS em JSON válido, sem markdown, seguindo exatamente este formato:
{schema}
"""


class AnthropicCompletion:
    """Blocking SDK client driven from the event loop through the default executor"""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 500,
        timeout_seconds: float = 8.0,
        temperature: float = 0.3,
        client: Optional[Anthropic] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.client = client or Anthropic(api_key=api_key)

    def _create(self, system: str, user_prompt: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": user_prompt}],
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")

    async def complete(self, system_prompt: str, user_prompt: str, schema_hint: Optional[str] = None) -> str:
        system = system_prompt
        if schema_hint:
            system += JSON_ONLY_INSTRUCTION.format(schema=schema_hint)

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._create, system, user_prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise CompletionError(f"{self.model} timed out after {self.timeout_seconds}s") from e
        except APIError as e:
            raise CompletionError(f"{self.model} request failed: {e}") from e


def create_coach_completion() -> AnthropicCompletion:
    return AnthropicCompletion(
        api_key=settings.anthropic_api_key,
        model=settings.claude_model,
        max_tokens=settings.completion_max_tokens,
        timeout_seconds=settings.completion_timeout_seconds,
    )


def create_summary_completion() -> AnthropicCompletion:
    return AnthropicCompletion(
        api_key=settings.anthropic_api_key,
        model=settings.claude_summary_model,
        max_tokens=settings.completion_max_tokens,
        timeout_seconds=settings.completion_timeout_seconds,
    )


def create_analysis_completion() -> AnthropicCompletion:
    # Whole-call analysis: bigger output, no realtime pressure
    return AnthropicCompletion(
        api_key=settings.anthropic_api_key,
        model=settings.claude_model,
        max_tokens=1500,
        timeout_seconds=60.0,
        temperature=0.2,
    )
