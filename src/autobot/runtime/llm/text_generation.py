"""Text-generation clients used by transformation strategies."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

logger = logging.getLogger(__name__)


class TextGenerationError(RuntimeError):
    """Raised when the text-generation service fails or returns nothing usable."""


class TextGenerator(Protocol):
    async def complete(
        self,
        *,
        system: str,
        user: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        ...


class OpenAITextGenerator:
    """Chat-completions client for OpenAI-compatible endpoints."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout_s: Optional[float] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s)

    async def complete(
        self,
        *,
        system: str,
        user: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Send one system/user exchange and return the reply text.

        Args:
            system (str): System instruction.
            user (str): User message with the bounded context.
            temperature (Optional[float]): Overrides the configured temperature.
            max_tokens (Optional[int]): Overrides the configured completion limit.

        Returns:
            str: Stripped content of the first choice.

        Raises:
            TextGenerationError: When the request fails or the reply is empty.
        """
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
                temperature=float(self.temperature if temperature is None else temperature),
                max_tokens=int(self.max_tokens if max_tokens is None else max_tokens),
            )
        except OpenAIError as exc:
            raise TextGenerationError(f"Text generation request failed: {exc}") from exc
        if not resp.choices:
            raise TextGenerationError("Text generation returned no choices")
        content = (resp.choices[0].message.content or "").strip()
        if not content:
            raise TextGenerationError("Text generation returned empty content")
        return content


class OfflineTextGenerator:
    """Deterministic generator used when no API key is configured.

    Replies never propose edits, so runs complete without touching the
    repository beyond the reports some strategies always write.
    """

    async def complete(
        self,
        *,
        system: str,
        user: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if "```json" in system or "JSON" in system:
            return "No changes proposed (offline mode).\n\n```json\n{}\n```"
        return "Offline analysis: no text-generation service is configured, so no findings were produced."


def create_text_generator(config: dict[str, Any]) -> TextGenerator:
    """Build the text generator from the ``llm`` config section and environment.

    ``OPENAI_API_KEY`` selects the OpenAI client; ``OPENAI_API_BASE`` and
    ``LLM_MODEL`` override the configured endpoint and model.

    Args:
        config (dict[str, Any]): Full runtime configuration mapping.

    Returns:
        TextGenerator: OpenAI-backed generator, or the offline one without a key.
    """
    llm_cfg = config.get("llm") if isinstance(config.get("llm"), dict) else {}
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        logger.warning("OPENAI_API_KEY is not set; using the offline text generator")
        return OfflineTextGenerator()
    return OpenAITextGenerator(
        api_key=api_key,
        model=os.getenv("LLM_MODEL") or str(llm_cfg.get("model") or "gpt-4o-mini"),
        base_url=os.getenv("OPENAI_API_BASE") or llm_cfg.get("api_base") or None,
        temperature=float(llm_cfg.get("temperature", 0.1)),
        max_tokens=int(llm_cfg.get("max_tokens", 2000)),
    )
