from __future__ import annotations

import json
from pathlib import Path

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

SECRET_KEY_LENGTH = 64


def parse_public_key(value: str, *, field_name: str = "public key") -> Pubkey:
    text = str(value or "").strip()
    if not text:
        raise ValueError(f"missing {field_name}")
    try:
        return Pubkey.from_string(text)
    except ValueError as exc:
        raise ValueError(f"invalid {field_name}: {text}") from exc


def _secret_key_bytes(text: str, *, source: str) -> bytes:
    stripped = text.strip()
    if stripped.startswith("["):
        try:
            raw = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid keypair file {source}: not valid JSON") from exc
        if not isinstance(raw, list) or not all(isinstance(b, int) and 0 <= b <= 255 for b in raw):
            raise ValueError(f"invalid keypair file {source}: expected an array of byte values")
        secret = bytes(raw)
    else:
        try:
            secret = base58.b58decode(stripped)
        except ValueError as exc:
            raise ValueError(f"invalid keypair file {source}: not a JSON array or base58 key") from exc
    if len(secret) != SECRET_KEY_LENGTH:
        raise ValueError(
            f"invalid keypair file {source}: expected {SECRET_KEY_LENGTH} bytes, got {len(secret)}"
        )
    return secret


def load_keypair(path: str | Path) -> Keypair:
    """Load a Solana CLI keypair file (JSON byte array) or a base58 secret key file."""
    key_path = Path(path).expanduser()
    if not key_path.is_file():
        raise ValueError(f"keypair file not found: {key_path}")
    secret = _secret_key_bytes(key_path.read_text(encoding="utf-8"), source=str(key_path))
    try:
        return Keypair.from_bytes(secret)
    except ValueError as exc:
        raise ValueError(f"invalid keypair file {key_path}: {exc}") from exc


def stub_identity() -> Keypair:
    """Throwaway identity for read-only commands that never sign."""
    return Keypair()
