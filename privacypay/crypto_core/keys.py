# privacypay/crypto_core/keys.py
"""
Inbox identity keys for memo encryption.

These keys are separate from any Solana wallet key. They are Curve25519 box
keys used only to encrypt and decrypt private memos, and the secret half never
leaves the machine.

Two identities exist:
  - device key: random, created lazily, persisted in a KeyValueStore
  - derived key: SHA-512(wallet signature)[:32], recomputed on demand and held
    only in a SessionKeyStore, so the same wallet opens the same inbox on any
    device without a server holding anything.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

import base58
from nacl.encoding import RawEncoder
from nacl.hash import sha512
from nacl.public import PrivateKey, PublicKey

from privacypay.config import INBOX_UNLOCK_MESSAGE
from privacypay.errors import InvalidKeyFormat, NoDecryptionKey, StorageUnavailable
from privacypay.store import KeyValueStore

LOG = logging.getLogger("privacypay.keys")
LOG.addHandler(logging.NullHandler())

PUBLIC_KEY_STORAGE_KEY = "pp_inbox_publicKey"
SECRET_KEY_STORAGE_KEY = "pp_inbox_secretKey"

PUBLIC_KEY_LENGTH = PublicKey.SIZE
SECRET_KEY_LENGTH = PrivateKey.SIZE


@dataclass(frozen=True)
class IdentityKeyPair:
    public_key: bytes
    secret_key: bytes

    def __post_init__(self):
        if len(self.public_key) != PUBLIC_KEY_LENGTH or len(self.secret_key) != SECRET_KEY_LENGTH:
            raise InvalidKeyFormat("Invalid key lengths.")

    @classmethod
    def from_secret(cls, secret_key: bytes) -> "IdentityKeyPair":
        sk = PrivateKey(bytes(secret_key))
        return cls(public_key=sk.public_key.encode(), secret_key=sk.encode())

    @classmethod
    def generate(cls) -> "IdentityKeyPair":
        sk = PrivateKey.generate()
        return cls(public_key=sk.public_key.encode(), secret_key=sk.encode())

    def is_consistent(self) -> bool:
        return PrivateKey(self.secret_key).public_key.encode() == self.public_key

    @property
    def public_key_base58(self) -> str:
        return base58.b58encode(self.public_key).decode()

    def __repr__(self) -> str:
        # never print the secret half
        return f"IdentityKeyPair(public_key={self.public_key_base58!r})"


class MessageSigner(Protocol):
    async def sign_message(self, message: bytes) -> bytes: ...


class SessionKeyStore:
    """Volatile holder for the derived key. One instance per user session."""

    def __init__(self):
        self._keypair: Optional[IdentityKeyPair] = None

    def set(self, kp: IdentityKeyPair) -> None:
        self._keypair = kp

    def get(self) -> Optional[IdentityKeyPair]:
        return self._keypair

    def clear(self) -> None:
        self._keypair = None


def derive_from_signature(signature: bytes) -> IdentityKeyPair:
    """Pure: identical signature bytes give an identical keypair everywhere."""
    digest = sha512(bytes(signature), encoder=RawEncoder)
    return IdentityKeyPair.from_secret(digest[:SECRET_KEY_LENGTH])


def _b58(key: bytes) -> str:
    return base58.b58encode(key).decode()


def _b58decode(encoded: str) -> bytes:
    return base58.b58decode(encoded)


class KeyVault:
    def __init__(self, store: KeyValueStore, session: Optional[SessionKeyStore] = None):
        self.store = store
        self.session = session if session is not None else SessionKeyStore()

    # ---------- device key ----------

    def _stored_keypair(self) -> Optional[IdentityKeyPair]:
        pub = self.store.get(PUBLIC_KEY_STORAGE_KEY)
        sec = self.store.get(SECRET_KEY_STORAGE_KEY)
        if not pub or not sec:
            return None
        try:
            kp = IdentityKeyPair(public_key=_b58decode(pub), secret_key=_b58decode(sec))
        except (ValueError, InvalidKeyFormat):
            LOG.warning("Stored inbox key is malformed; ignoring it")
            return None
        if not kp.is_consistent():
            LOG.warning("Stored inbox public key does not match its secret key; ignoring it")
            return None
        return kp

    def _store_keypair(self, kp: IdentityKeyPair) -> None:
        self.store.set_many({
            PUBLIC_KEY_STORAGE_KEY: _b58(kp.public_key),
            SECRET_KEY_STORAGE_KEY: _b58(kp.secret_key),
        })

    def get_device_key(self) -> Optional[IdentityKeyPair]:
        try:
            return self._stored_keypair()
        except StorageUnavailable:
            return None

    def get_or_create_device_key(self) -> IdentityKeyPair:
        try:
            existing = self._stored_keypair()
            if existing:
                return existing
            kp = IdentityKeyPair.generate()
            self._store_keypair(kp)
            LOG.info("Created device inbox key %s", kp.public_key_base58)
            return kp
        except StorageUnavailable as e:
            LOG.warning("Key storage unavailable (%s); using an ephemeral inbox key", e)
            return IdentityKeyPair.generate()

    def device_public_key_base58(self) -> str:
        return self.get_or_create_device_key().public_key_base58

    def clear_device_key(self) -> None:
        self.store.remove(PUBLIC_KEY_STORAGE_KEY)
        self.store.remove(SECRET_KEY_STORAGE_KEY)

    # ---------- session (derived) key ----------

    def derive_from_signature(self, signature: bytes) -> IdentityKeyPair:
        return derive_from_signature(signature)

    def set_session_key(self, kp: IdentityKeyPair) -> None:
        self.session.set(kp)

    def get_session_key(self) -> Optional[IdentityKeyPair]:
        return self.session.get()

    def clear_session_key(self) -> None:
        self.session.clear()

    async def unlock_with_signer(self, signer: MessageSigner, message: bytes = INBOX_UNLOCK_MESSAGE) -> IdentityKeyPair:
        existing = self.session.get()
        if existing:
            return existing
        signature = await signer.sign_message(message)
        kp = derive_from_signature(signature)
        self.session.set(kp)
        LOG.info("Inbox unlocked with wallet-derived key %s", kp.public_key_base58)
        return kp

    # ---------- backup ----------

    def export_keys(self) -> str:
        kp = self.get_or_create_device_key()
        payload = {
            "publicKey": base64.b64encode(kp.public_key).decode(),
            "secretKey": base64.b64encode(kp.secret_key).decode(),
        }
        return json.dumps(payload, indent=2)

    def import_keys(self, exported: str) -> IdentityKeyPair:
        kp = parse_exported_keys(exported)
        self._store_keypair(kp)
        LOG.info("Imported device inbox key %s", kp.public_key_base58)
        return kp


def parse_exported_keys(exported: str) -> IdentityKeyPair:
    try:
        parsed: Any = json.loads(exported)
    except (TypeError, ValueError):
        raise InvalidKeyFormat("Invalid key export format. Expected JSON.")

    if not isinstance(parsed, dict) or "publicKey" not in parsed or "secretKey" not in parsed:
        raise InvalidKeyFormat("Invalid key export format. Missing fields.")

    public_key, secret_key = parsed["publicKey"], parsed["secretKey"]
    if not isinstance(public_key, str) or not isinstance(secret_key, str):
        raise InvalidKeyFormat("Invalid key export format. Fields must be strings.")

    try:
        pub = base64.b64decode(public_key, validate=True)
        sec = base64.b64decode(secret_key, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidKeyFormat("Failed to import inbox keys: fields are not valid base64.")

    if len(pub) != PUBLIC_KEY_LENGTH or len(sec) != SECRET_KEY_LENGTH:
        raise InvalidKeyFormat("Failed to import inbox keys: Invalid key lengths in imported data.")
    kp = IdentityKeyPair(public_key=pub, secret_key=sec)
    if not kp.is_consistent():
        raise InvalidKeyFormat("Failed to import inbox keys: public key does not match secret key.")
    return kp


def resolve_decryption_keys(vault: KeyVault) -> List[IdentityKeyPair]:
    """Session (wallet-derived) key first, then the device key."""
    keys: List[IdentityKeyPair] = []
    session_key = vault.get_session_key()
    if session_key:
        keys.append(session_key)
    device_key = vault.get_device_key()
    if device_key and device_key != session_key:
        keys.append(device_key)
    if not keys:
        raise NoDecryptionKey()
    return keys
