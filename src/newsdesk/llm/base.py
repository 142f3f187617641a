from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from . import prompts
from .parsing import (
    ARTICLE_PAGE_SCHEMA,
    CLASSIFY_SCHEMA,
    ENTITIES_SCHEMA,
    SEO_SCHEMA,
    parse_json_object,
)


@dataclass(frozen=True)
class GenerationResult:
    success: bool
    content: str = ""
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class TextGenerator(ABC):
    """Text generation capability used by the draft pipeline.

    Subclasses implement complete(); every wrapper returns a GenerationResult
    and never raises for provider or parsing failures.
    """

    name = "base"

    @abstractmethod
    def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> GenerationResult:
        raise NotImplementedError

    def rewrite(self, content: str, style: str, lang: str) -> GenerationResult:
        return self.complete(
            prompts.rewrite_prompt(content),
            prompts.rewrite_system(style, lang),
            temperature=prompts.REWRITE_TEMPERATURE,
            max_tokens=4000,
        )

    def translate(
        self,
        content: str,
        source: str,
        target: str,
        glossary: dict[str, str] | None = None,
    ) -> GenerationResult:
        return self.complete(
            content,
            prompts.translate_system(source, target, glossary),
            temperature=prompts.TRANSLATE_TEMPERATURE,
            max_tokens=6000,
        )

    def generate_seo(self, content: str, lang: str) -> GenerationResult:
        result = self.complete(
            content,
            prompts.seo_system(lang),
            temperature=prompts.SEO_TEMPERATURE,
            max_tokens=500,
        )
        return _with_json(result, SEO_SCHEMA)

    def extract_entities(self, content: str) -> GenerationResult:
        result = self.complete(
            content,
            prompts.ENTITIES_SYSTEM,
            temperature=prompts.EXTRACT_TEMPERATURE,
            max_tokens=1000,
        )
        return _with_json(result, ENTITIES_SCHEMA)

    def extract_article(self, html: str) -> GenerationResult:
        result = self.complete(
            html,
            prompts.ARTICLE_PAGE_SYSTEM,
            temperature=prompts.EXTRACT_TEMPERATURE,
            max_tokens=4000,
        )
        return _with_json(result, ARTICLE_PAGE_SCHEMA)

    def classify(self, content: str, categories: list[str]) -> GenerationResult:
        result = self.complete(
            content,
            prompts.classify_system(categories),
            temperature=prompts.EXTRACT_TEMPERATURE,
            max_tokens=300,
        )
        return _with_json(result, CLASSIFY_SCHEMA)

    def summarize(self, content: str, max_length: int = 200, lang: str = "de") -> GenerationResult:
        result = self.complete(
            content,
            prompts.summarize_system(max_length, lang),
            temperature=prompts.EXTRACT_TEMPERATURE,
            max_tokens=300,
        )
        if not result.success:
            return result
        return GenerationResult(success=True, content=result.content.strip()[:max_length])


class DisabledTextGenerator(TextGenerator):
    """Stands in when llm.enabled is false; the pipeline uses its fallbacks."""

    name = "disabled"

    def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> GenerationResult:
        return GenerationResult(success=False, error="llm_disabled")


def _with_json(result: GenerationResult, schema: dict[str, Any]) -> GenerationResult:
    if not result.success:
        return result
    parsed = parse_json_object(result.content, schema)
    if parsed.was_fallback:
        return GenerationResult(success=False, content=result.content, error=parsed.error)
    return GenerationResult(success=True, content=result.content, data=parsed.data)
