# privacypay/crypto_core/wallet.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import base58
from nacl.signing import SigningKey


def read_secret_64_from_json_value(v: Any) -> bytes:
    """solana-keygen keyfile content: a JSON list of 64 ints (seed || public key)."""
    if isinstance(v, list) and len(v) == 64 and all(isinstance(x, int) and 0 <= x < 256 for x in v):
        return bytes(v)
    raise ValueError("Unsupported keyfile format: expected a JSON list of 64 bytes")


class KeypairSigner:
    """
    Message-signing capability backed by a local Solana keypair.

    Only `sign_message` is implemented; transaction signing stays with the
    wallet / SDK that owns the byte-level transaction format.
    """

    def __init__(self, secret_64: bytes):
        self._sk = SigningKey(bytes(secret_64[:32]))
        expected_pub = bytes(secret_64[32:])
        if self._sk.verify_key.encode() != expected_pub:
            raise ValueError("Keyfile public key does not match its secret seed")

    @classmethod
    def from_keyfile(cls, path: str | Path) -> "KeypairSigner":
        return cls(read_secret_64_from_json_value(json.loads(Path(path).read_text())))

    @property
    def public_key(self) -> str:
        return base58.b58encode(self._sk.verify_key.encode()).decode()

    async def sign_message(self, message: bytes) -> bytes:
        return self._sk.sign(bytes(message)).signature
