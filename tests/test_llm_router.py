import base64

import pytest

from newsdesk.errors import MissingCredentialError
from newsdesk.llm import router
from newsdesk.llm.base import DisabledTextGenerator
from newsdesk.llm.router import (
    AnthropicGenerator,
    OpenAICompatibleGenerator,
    check_provider,
    create_text_generator,
)
from newsdesk.security.secrets import MASTER_KEY_ENV
from newsdesk.services.credentials import set_credential


def test_disabled_llm_returns_disabled_generator(make_config):
    generator = create_text_generator(make_config())

    assert isinstance(generator, DisabledTextGenerator)
    result = generator.rewrite("Text", "news", "de")
    assert not result.success
    assert result.error == "llm_disabled"


def test_enabled_llm_requires_key(conn, make_config, monkeypatch):
    monkeypatch.delenv("ND_LLM_API_KEY", raising=False)
    with pytest.raises(MissingCredentialError):
        create_text_generator(make_config({"llm": {"enabled": True}}), conn)


def test_provider_selection(conn, make_config, monkeypatch):
    monkeypatch.setenv("ND_LLM_API_KEY", "sk-test")

    deepseek = create_text_generator(make_config({"llm": {"enabled": True}}), conn)
    assert isinstance(deepseek, OpenAICompatibleGenerator)
    assert deepseek.name == "deepseek"
    assert deepseek.base_url == "https://api.deepseek.com/v1"

    anthropic = create_text_generator(
        make_config({"llm": {"enabled": True, "provider": "anthropic", "model": "claude-test"}}),
        conn,
    )
    assert isinstance(anthropic, AnthropicGenerator)


def test_stored_credential_is_used(conn, make_config, monkeypatch):
    monkeypatch.delenv("ND_LLM_API_KEY", raising=False)
    monkeypatch.setenv(MASTER_KEY_ENV, base64.urlsafe_b64encode(b"k" * 32).decode("utf-8"))
    set_credential(conn, "llm_api_key", "sk-stored")

    generator = create_text_generator(make_config({"llm": {"enabled": True}}), conn)
    assert generator.api_key == "sk-stored"


def test_openai_compatible_request(monkeypatch):
    captured = {}

    def fake_request(method, url, headers, payload, timeout):
        captured.update(url=url, headers=headers, payload=payload)
        return {"choices": [{"message": {"content": "<title>Hallo</title>"}}]}

    monkeypatch.setattr(router, "_http_request", fake_request)
    generator = OpenAICompatibleGenerator("sk-test", "deepseek-chat", "https://api.deepseek.com/v1/")

    result = generator.complete("Prompt", "System", temperature=0.2, max_tokens=50)

    assert result.success
    assert result.content == "<title>Hallo</title>"
    assert captured["url"] == "https://api.deepseek.com/v1/chat/completions"
    assert captured["headers"] == {"Authorization": "Bearer sk-test"}
    assert captured["payload"]["messages"][0] == {"role": "system", "content": "System"}
    assert captured["payload"]["max_tokens"] == 50


def test_anthropic_request(monkeypatch):
    captured = {}

    def fake_request(method, url, headers, payload, timeout):
        captured.update(url=url, headers=headers, payload=payload)
        return {"content": [{"type": "text", "text": "OK"}]}

    monkeypatch.setattr(router, "_http_request", fake_request)
    generator = AnthropicGenerator("sk-ant", "claude-test", "https://api.anthropic.com/v1")

    result = generator.complete("Prompt", "System")

    assert result.content == "OK"
    assert captured["url"] == "https://api.anthropic.com/v1/messages"
    assert captured["headers"]["x-api-key"] == "sk-ant"
    assert captured["payload"]["system"] == "System"


def test_provider_errors_become_failed_results(monkeypatch):
    def fake_request(method, url, headers, payload, timeout):
        raise ValueError("http_error 429: rate limited")

    monkeypatch.setattr(router, "_http_request", fake_request)
    result = OpenAICompatibleGenerator("sk", "m", "https://x.example").generate_seo("Text", "de")

    assert not result.success
    assert result.error.startswith("http_error 429")


def test_generate_seo_parses_json(monkeypatch):
    def fake_request(method, url, headers, payload, timeout):
        return {"choices": [{"message": {"content": '{"title": "T", "description": "D"}'}}]}

    monkeypatch.setattr(router, "_http_request", fake_request)
    result = OpenAICompatibleGenerator("sk", "m", "https://x.example").generate_seo("Text", "de")

    assert result.success
    assert result.data == {"title": "T", "description": "D"}


def test_check_provider_reports_missing_key(make_config, monkeypatch):
    monkeypatch.delenv("ND_LLM_API_KEY", raising=False)
    assert check_provider(make_config().llm) == {"ok": False, "error": "api_key_missing"}
