"""
Anthropic-backed completion function for the self-healing controller
"""

import asyncio
import logging
import os
from dataclasses import dataclass

import anthropic

from .healing import CompletionRequest

logger = logging.getLogger(__name__)


@dataclass
class CompletionConfig:
    """Language model configuration"""
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    api_key: str | None = None

    @classmethod
    def from_env(cls) -> "CompletionConfig":
        return cls(
            model=os.environ.get("ANTHROPIC_MODEL", cls.model),
            max_tokens=int(os.environ.get("ANTHROPIC_MAX_TOKENS", cls.max_tokens)),
            api_key=os.environ.get("ANTHROPIC_API_KEY"),
        )


class AnthropicCompletion:
    """
    Callable usable as the controller's completion function

    Usage:
        controller = SelfHealingController(AnthropicCompletion(CompletionConfig.from_env()))
    """

    def __init__(self, config: CompletionConfig | None = None, client=None):
        self.config = config or CompletionConfig()
        self._client = client

    @property
    def client(self):
        """Lazily build the Anthropic client (Bedrock when no API key is configured)"""
        if self._client is None:
            if self.config.api_key:
                self._client = anthropic.Anthropic(api_key=self.config.api_key)
            else:
                self._client = anthropic.AnthropicBedrock()
            logger.info(f"{type(self._client).__name__} client initialized")
        return self._client

    def complete(self, request: CompletionRequest) -> str:
        logger.info(f"Requesting {request.purpose} from {self.config.model}")
        response = self.client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            system=request.system,
            messages=[{"role": "user", "content": request.prompt}],
        )

        text_content = ""
        for block in response.content:
            if hasattr(block, "text"):
                text_content += block.text
        return text_content

    async def __call__(self, request: CompletionRequest) -> str:
        return await asyncio.to_thread(self.complete, request)
