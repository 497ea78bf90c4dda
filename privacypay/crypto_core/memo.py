# privacypay/crypto_core/memo.py
from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as nacl_random

from privacypay.crypto_core.keys import IdentityKeyPair
from privacypay.errors import (
    DecryptionFailed,
    InvalidEnvelopeFormat,
    NoDecryptionKey,
    RecipientKeyUnknown,
)

LOG = logging.getLogger("privacypay.memo")
LOG.addHandler(logging.NullHandler())

NONCE_LENGTH = Box.NONCE_SIZE


@dataclass(frozen=True)
class EncryptedEnvelope:
    cipher: bytes
    nonce: bytes
    ephemeral_public_key: bytes

    def to_json(self) -> str:
        return json.dumps(
            {
                "cipher": base64.b64encode(self.cipher).decode(),
                "nonce": base64.b64encode(self.nonce).decode(),
                "ephemPub": base64.b64encode(self.ephemeral_public_key).decode(),
            }
        )


@dataclass(frozen=True)
class PlaintextEnvelope:
    """Unauthenticated. Only produced when the sender opted into unencrypted delivery."""
    plaintext: str

    def to_json(self) -> str:
        return json.dumps({"plaintext": self.plaintext})


Envelope = Union[EncryptedEnvelope, PlaintextEnvelope]


class MemoMode(str, enum.Enum):
    RECIPIENT = "recipient"
    SELF = "self"
    PLAINTEXT = "plaintext"
    NONE = "none"


def _b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise DecryptionFailed()


def parse_envelope(blob: str) -> Envelope:
    try:
        parsed = json.loads(blob)
    except (TypeError, ValueError):
        raise InvalidEnvelopeFormat("Invalid encrypted memo format (not JSON).")

    if not isinstance(parsed, dict):
        raise InvalidEnvelopeFormat("Invalid encrypted memo format (not an object).")

    if "plaintext" in parsed:
        if set(parsed) & {"cipher", "nonce", "ephemPub"}:
            raise InvalidEnvelopeFormat("Invalid encrypted memo format (mixed plaintext and cipher fields).")
        if not isinstance(parsed["plaintext"], str):
            raise InvalidEnvelopeFormat("Invalid encrypted memo format (plaintext must be a string).")
        return PlaintextEnvelope(plaintext=parsed["plaintext"])

    if not all(k in parsed for k in ("cipher", "nonce", "ephemPub")):
        raise InvalidEnvelopeFormat("Invalid encrypted memo format (missing fields).")

    cipher, nonce, ephem = parsed["cipher"], parsed["nonce"], parsed["ephemPub"]
    if not all(isinstance(v, str) for v in (cipher, nonce, ephem)):
        raise InvalidEnvelopeFormat("Invalid encrypted memo format (fields must be strings).")

    return EncryptedEnvelope(
        cipher=_b64(cipher),
        nonce=_b64(nonce),
        ephemeral_public_key=_b64(ephem),
    )


def encrypt_memo(memo_text: str, recipient_public_key: bytes) -> str:
    if not memo_text:
        return ""
    nonce = nacl_random(NONCE_LENGTH)
    ephem = PrivateKey.generate()
    box = Box(ephem, PublicKey(bytes(recipient_public_key)))
    ct = box.encrypt(memo_text.encode("utf-8"), nonce).ciphertext
    return EncryptedEnvelope(
        cipher=ct,
        nonce=nonce,
        ephemeral_public_key=ephem.public_key.encode(),
    ).to_json()


def open_envelope(env: Envelope, secret_key: bytes) -> str:
    if isinstance(env, PlaintextEnvelope):
        return env.plaintext
    try:
        box = Box(PrivateKey(bytes(secret_key)), PublicKey(env.ephemeral_public_key))
        plain = box.decrypt(env.cipher, env.nonce)
        return plain.decode("utf-8")
    except (CryptoError, ValueError, TypeError):
        raise DecryptionFailed()


def decrypt_memo(encrypted_memo_blob: str, secret_key: bytes) -> str:
    if not encrypted_memo_blob:
        return ""
    return open_envelope(parse_envelope(encrypted_memo_blob), secret_key)


def decrypt_with_keys(encrypted_memo_blob: str, keys: Iterable[IdentityKeyPair]) -> Tuple[str, Optional[IdentityKeyPair]]:
    """
    Try each key in order (see keys.resolve_decryption_keys) and return the
    plaintext with the key that opened it. Plaintext envelopes return no key.
    """
    if not encrypted_memo_blob:
        return "", None
    env = parse_envelope(encrypted_memo_blob)
    if isinstance(env, PlaintextEnvelope):
        return env.plaintext, None

    keys = list(keys)
    if not keys:
        raise NoDecryptionKey()
    for kp in keys:
        try:
            return open_envelope(env, kp.secret_key), kp
        except DecryptionFailed:
            LOG.debug("Memo did not open with key %s, trying next", kp.public_key_base58)
    raise DecryptionFailed()


def encrypt_with_fallback(
    memo_text: str,
    recipient_public_key: Optional[bytes],
    *,
    sender_key: Optional[IdentityKeyPair] = None,
    allow_self: bool = False,
    allow_plaintext: bool = False,
) -> Tuple[str, MemoMode]:
    """
    Encrypt for the recipient when their inbox key is known. Otherwise, and
    only with explicit consent, encrypt for the sender's own key (readable by
    the sender only) or emit a plaintext envelope.
    """
    if not memo_text:
        return "", MemoMode.NONE
    if recipient_public_key:
        return encrypt_memo(memo_text, recipient_public_key), MemoMode.RECIPIENT
    if allow_self and sender_key is not None:
        return encrypt_memo(memo_text, sender_key.public_key), MemoMode.SELF
    if allow_plaintext:
        LOG.warning("Sending memo as plaintext: recipient inbox key unknown")
        return PlaintextEnvelope(plaintext=memo_text).to_json(), MemoMode.PLAINTEXT
    raise RecipientKeyUnknown()


def is_plaintext_envelope(encrypted_memo_blob: str) -> bool:
    if not encrypted_memo_blob:
        return False
    return isinstance(parse_envelope(encrypted_memo_blob), PlaintextEnvelope)
