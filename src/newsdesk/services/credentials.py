from __future__ import annotations

import os
from typing import Any

from ..security.secrets import decrypt_secret, encrypt_secret
from ..utils import utc_now_iso

TELEGRAM_TOKEN = "telegram_bot_token"
TELEGRAM_TOKEN_ENV = "ND_TELEGRAM_BOT_TOKEN"


def set_credential(conn, name: str, value: str) -> dict[str, Any]:
    if not name or not value:
        raise ValueError("credential name and value are required")
    key_id, value_enc = encrypt_secret(value, _credential_aad(name))
    last4 = value[-4:] if len(value) >= 4 else value
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO credentials (name, key_id, value_enc, last4, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET
            key_id=excluded.key_id,
            value_enc=excluded.value_enc,
            last4=excluded.last4,
            updated_at=excluded.updated_at
        """,
        (name, key_id, value_enc, last4, now, now),
    )
    conn.commit()
    return {"name": name, "key_id": key_id, "last4": last4, "updated_at": now}


def load_credential(conn, name: str) -> str | None:
    row = conn.execute(
        "SELECT value_enc FROM credentials WHERE name = ?",
        (name,),
    ).fetchone()
    if not row:
        return None
    return decrypt_secret(row[0], _credential_aad(name))


def resolve_credential(conn, name: str, env_name: str | None = None) -> str | None:
    """Environment first, then the encrypted credentials table."""
    if env_name:
        value = os.environ.get(env_name)
        if value:
            return value
    if conn is None:
        return None
    return load_credential(conn, name)


def list_credentials(conn) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT name, key_id, last4, created_at, updated_at FROM credentials ORDER BY name"
    ).fetchall()
    return [
        {
            "name": row[0],
            "key_id": row[1],
            "last4": row[2],
            "created_at": row[3],
            "updated_at": row[4],
        }
        for row in rows
    ]


def delete_credential(conn, name: str) -> bool:
    cursor = conn.execute("DELETE FROM credentials WHERE name = ?", (name,))
    conn.commit()
    return cursor.rowcount > 0


def _credential_aad(name: str) -> bytes:
    return f"credential:{name}".encode("utf-8")
