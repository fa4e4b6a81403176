import asyncio
import logging
import os
import time
from typing import Optional, Protocol

from google import genai
from google.genai import types

from feed_aggregator.utils.errors import AIGenerationError, AITimeoutError
from feed_aggregator.utils.logging_config import log_ai_interaction


class AIBackend(Protocol):
    """Text-generation collaborator used for parser analysis and refinement."""

    async def generate_content(self, prompt: str) -> str:
        ...


class GeminiBackend:
    """
    Gemini text generation through the Google GenAI Python SDK.

    Every call is bounded by `timeout` seconds; a timeout raises
    AITimeoutError, any SDK failure or an empty reply raises
    AIGenerationError.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 90.0,
        temperature: float = 0.1,
        max_output_tokens: int = 8000,
    ):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key:
            raise ValueError("Gemini API key required. Set GEMINI_API_KEY or pass api_key parameter.")

        self.client = genai.Client(api_key=self.api_key)
        self.model = model or os.getenv("GEMINI_MODEL") or "gemini-2.5-flash"
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.logger = logging.getLogger(__name__)

    async def generate_content(self, prompt: str) -> str:
        config = types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model,
                    contents=prompt,
                    config=config,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            self.logger.error(f"Gemini API call timed out after {self.timeout} seconds")
            raise AITimeoutError(f"AI generation timed out after {self.timeout} seconds") from e
        except Exception as e:
            self.logger.error(f"Gemini API call failed: {e}")
            raise AIGenerationError(f"AI generation failed: {e}") from e

        elapsed_ms = (time.monotonic() - start) * 1000
        usage_meta = getattr(response, 'usage_metadata', None)
        tokens_used = getattr(usage_meta, 'total_token_count', 0) if usage_meta else 0

        try:
            text = response.text
        except ValueError:
            # response.text raises when the candidate holds no text parts
            text = None

        log_ai_interaction(
            self.logger,
            prompt_key='parser',
            model=self.model,
            tokens_used=tokens_used or 0,
            response_time_ms=elapsed_ms,
            success=bool(text),
        )

        if not text:
            raise AIGenerationError("AI backend returned an empty response")
        return text
