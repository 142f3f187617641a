import base64

import pytest

from newsdesk.config import ConfigError
from newsdesk.security.secrets import (
    KEY_ID_ENV,
    MASTER_KEY_ENV,
    decrypt_secret,
    encrypt_secret,
    generate_master_key,
)
from newsdesk.services.credentials import (
    TELEGRAM_TOKEN,
    delete_credential,
    list_credentials,
    load_credential,
    resolve_credential,
    set_credential,
)


def _set_master_env(monkeypatch, fill=b"a"):
    key = base64.urlsafe_b64encode(fill * 32).decode("utf-8")
    monkeypatch.setenv(MASTER_KEY_ENV, key)
    monkeypatch.setenv(KEY_ID_ENV, "v1")


def test_encrypt_decrypt(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = encrypt_secret("supersecret", b"credential:test")
    assert key_id == "v1"
    assert decrypt_secret(blob, b"credential:test") == "supersecret"


def test_decrypt_with_wrong_aad_fails(monkeypatch):
    _set_master_env(monkeypatch)
    _, blob = encrypt_secret("supersecret", b"credential:test")
    with pytest.raises(ConfigError):
        decrypt_secret(blob, b"credential:other")


def test_missing_master_key(monkeypatch):
    monkeypatch.delenv(MASTER_KEY_ENV, raising=False)
    with pytest.raises(ConfigError):
        encrypt_secret("value", b"aad")


def test_credentials_are_stored_encrypted(conn, monkeypatch):
    _set_master_env(monkeypatch)
    stored = set_credential(conn, TELEGRAM_TOKEN, "123456:ABCDEF")
    assert stored["last4"] == "CDEF"

    raw = conn.execute("SELECT value_enc FROM credentials WHERE name = ?", (TELEGRAM_TOKEN,)).fetchone()
    assert "123456:ABCDEF" not in raw[0]
    assert load_credential(conn, TELEGRAM_TOKEN) == "123456:ABCDEF"
    assert [item["name"] for item in list_credentials(conn)] == [TELEGRAM_TOKEN]

    assert delete_credential(conn, TELEGRAM_TOKEN) is True
    assert load_credential(conn, TELEGRAM_TOKEN) is None


def test_resolve_credential_prefers_environment(conn, monkeypatch):
    _set_master_env(monkeypatch)
    set_credential(conn, "llm_api_key", "stored-key")
    monkeypatch.setenv("ND_LLM_API_KEY", "env-key")
    assert resolve_credential(conn, "llm_api_key", "ND_LLM_API_KEY") == "env-key"
    monkeypatch.delenv("ND_LLM_API_KEY")
    assert resolve_credential(conn, "llm_api_key", "ND_LLM_API_KEY") == "stored-key"


def test_generated_master_key_loads(monkeypatch):
    monkeypatch.setenv(MASTER_KEY_ENV, generate_master_key())
    _, blob = encrypt_secret("value", b"aad")
    assert decrypt_secret(blob, b"aad") == "value"
