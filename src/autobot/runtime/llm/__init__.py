"""Text-generation capability consumed by transformation strategies."""

from .text_generation import (
    OfflineTextGenerator,
    OpenAITextGenerator,
    TextGenerationError,
    TextGenerator,
    create_text_generator,
)

__all__ = [
    "OfflineTextGenerator",
    "OpenAITextGenerator",
    "TextGenerationError",
    "TextGenerator",
    "create_text_generator",
]
