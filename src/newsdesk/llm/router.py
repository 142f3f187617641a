from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

from ..config import Config, LlmConfig
from ..errors import ConfigError, MissingCredentialError
from ..services.credentials import resolve_credential
from ..utils import log_event
from .base import DisabledTextGenerator, GenerationResult, TextGenerator

LLM_CREDENTIAL = "llm_api_key"

logger = logging.getLogger("newsdesk.llm")


class OpenAICompatibleGenerator(TextGenerator):
    """Chat completions API; DeepSeek speaks the same protocol."""

    name = "openai_compatible"

    def __init__(self, api_key: str, model: str, base_url: str, timeout_seconds: int = 60) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds

    def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> GenerationResult:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            response = _http_request(
                "POST",
                _join_url(self.base_url, "/chat/completions"),
                _auth_headers("openai_compatible", self.api_key),
                payload,
                self.timeout_seconds,
            )
            content = _read_openai(response)
        except ValueError as exc:
            log_event(logger, logging.WARNING, "llm_request_failed", provider=self.name, error=str(exc))
            return GenerationResult(success=False, error=str(exc))
        return GenerationResult(success=True, content=content)


class AnthropicGenerator(TextGenerator):
    name = "anthropic"

    def __init__(self, api_key: str, model: str, base_url: str, timeout_seconds: int = 60) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds

    def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: float = 0.7,
        max_tokens: int = 4000,
    ) -> GenerationResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        try:
            response = _http_request(
                "POST",
                _join_url(self.base_url, "/messages"),
                _auth_headers("anthropic", self.api_key),
                payload,
                self.timeout_seconds,
            )
            content = _read_anthropic(response)
        except ValueError as exc:
            log_event(logger, logging.WARNING, "llm_request_failed", provider=self.name, error=str(exc))
            return GenerationResult(success=False, error=str(exc))
        return GenerationResult(success=True, content=content)


def create_text_generator(config: Config, conn=None) -> TextGenerator:
    """Pick the generator for config.llm.

    Raises MissingCredentialError when the provider is enabled but no API key
    is found in the environment or the credentials table.
    """
    llm = config.llm
    if not llm.enabled:
        return DisabledTextGenerator()
    api_key = resolve_credential(conn, LLM_CREDENTIAL, llm.api_key_env)
    if not api_key:
        raise MissingCredentialError(
            f"LLM provider {llm.provider} is enabled but no API key is set; "
            f"set {llm.api_key_env} or store credential {LLM_CREDENTIAL}"
        )
    base_url = llm.base_url or _default_base_url(llm.provider)
    if llm.provider in {"openai_compatible", "deepseek"}:
        generator: TextGenerator = OpenAICompatibleGenerator(
            api_key, llm.model, base_url, llm.timeout_seconds
        )
        generator.name = llm.provider
        return generator
    if llm.provider == "anthropic":
        return AnthropicGenerator(api_key, llm.model, base_url, llm.timeout_seconds)
    raise ConfigError(f"unsupported llm provider {llm.provider}")


def check_provider(config: LlmConfig, conn=None) -> dict[str, Any]:
    api_key = resolve_credential(conn, LLM_CREDENTIAL, config.api_key_env)
    if not api_key:
        return {"ok": False, "error": "api_key_missing"}
    base_url = config.base_url or _default_base_url(config.provider)
    if config.provider == "anthropic":
        generator: TextGenerator = AnthropicGenerator(api_key, config.model, base_url, config.timeout_seconds)
    else:
        generator = OpenAICompatibleGenerator(api_key, config.model, base_url, config.timeout_seconds)
    result = generator.complete('Say "OK" if you can read this.', temperature=0, max_tokens=10)
    return {"ok": result.success, "error": result.error, "model": config.model}


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ValueError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ValueError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise ValueError(f"timeout: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("openai_missing_choices")
    return choices[0]["message"]["content"] or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    content = response.get("content") or []
    if not content:
        raise ValueError("anthropic_missing_content")
    return content[0].get("text") or ""


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {"Authorization": f"Bearer {api_key}"}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "deepseek":
        return "https://api.deepseek.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    return ""


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
