"""
Text Generation Service.

Thin wrapper over OpenAI chat completions. The response is returned as raw,
untrusted text; callers validate its structure before use.
"""
import logging
from typing import Optional

import openai
from openai import OpenAI

from examhost.config import settings
from examhost.errors import AIDraftError

logger = logging.getLogger(__name__)


class TextGenerationService:
    """Service for generating free text from a single prompt."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self._client: Optional[OpenAI] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> OpenAI:
        if not self.configured:
            raise AIDraftError(
                "AI question generation is not configured. Please set the OPENAI_API_KEY environment variable."
            )
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def generate(self, prompt: str, temperature: float = 0.7, max_tokens: int = 1000) -> str:
        """
        Send one user prompt and return the model's text.

        Raises:
            AIDraftError: not configured, or the provider call failed
        """
        client = self.client
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            logger.error("Text generation error: %s", e)
            raise AIDraftError(f"Failed to generate question with AI: {e}")

        return completion.choices[0].message.content or ""


# Singleton instance
llm_service = TextGenerationService()


def get_llm_service() -> TextGenerationService:
    """FastAPI dependency returning the shared text-generation service."""
    return llm_service
