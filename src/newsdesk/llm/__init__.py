from .base import DisabledTextGenerator, GenerationResult, TextGenerator
from .router import (
    AnthropicGenerator,
    OpenAICompatibleGenerator,
    check_provider,
    create_text_generator,
)

__all__ = [
    "AnthropicGenerator",
    "DisabledTextGenerator",
    "GenerationResult",
    "OpenAICompatibleGenerator",
    "TextGenerator",
    "check_provider",
    "create_text_generator",
]
