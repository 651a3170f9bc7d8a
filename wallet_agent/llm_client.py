"""
Language-model client.

Talks to any OpenAI-compatible chat-completions endpoint; by default the
Hugging Face router, which serves ``openai/gpt-oss-120b``. The orchestrator
only needs ``complete(messages, model) -> str``, so tests can pass a plain
async function instead.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

import openai

from wallet_agent.errors import ModelError
from wallet_constants import DEFAULT_MODEL, HF_ROUTER_BASE_URL

logger = logging.getLogger(__name__)

Message = Dict[str, str]
CompletionFn = Callable[[List[Message], Optional[str]], Awaitable[str]]


class LLMClient:
    """Thin async wrapper over ``openai.AsyncOpenAI``."""

    def __init__(
        self,
        api_key: str,
        base_url: str = HF_ROUTER_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 120.0,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self.model = model
        self.client = client or openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
        )

    async def complete(self, messages: List[Message], model: Optional[str] = None) -> str:
        """Send *messages* and return the assistant's text.

        Raises:
            ModelError: on transport/API errors or when the reply has no text.
        """
        model = model or self.model
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
            )
        except openai.OpenAIError as e:
            raise ModelError(f"Model call failed: {e}") from e

        if not response.choices:
            raise ModelError("Model returned no choices")
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise ModelError("Model returned an empty reply")
        logger.debug(f"Model {model} replied with {len(content)} chars")
        return content

    async def __call__(self, messages: List[Message], model: Optional[str] = None) -> str:
        return await self.complete(messages, model)

    async def close(self) -> None:
        await self.client.close()
