"""
Inbox Key Vault Tests
"""

import base64
import json

import base58
import pytest
from nacl.signing import SigningKey

from privacypay.crypto_core.keys import (
    PUBLIC_KEY_STORAGE_KEY,
    SECRET_KEY_STORAGE_KEY,
    IdentityKeyPair,
    KeyVault,
    derive_from_signature,
    parse_exported_keys,
    resolve_decryption_keys,
)
from privacypay.crypto_core.wallet import KeypairSigner
from privacypay.errors import InvalidKeyFormat, NoDecryptionKey, StorageUnavailable
from privacypay.store import JsonFileStore, MemoryStore, UnavailableStore


class _TornWriteStore(MemoryStore):
    """Applies the first value of a batch write, then fails."""

    def set_many(self, values):
        key, value = next(iter(values.items()))
        self.set(key, value)
        raise StorageUnavailable("disk full")


class TestDeviceKey:
    """Tests for the persisted device key."""

    def test_created_once_and_reused(self, vault):
        """Second call returns the stored key instead of generating a new one."""
        first = vault.get_or_create_device_key()
        second = vault.get_or_create_device_key()
        assert first == second
        assert len(first.public_key) == 32
        assert len(first.secret_key) == 32

    def test_stored_as_base58(self):
        """Device key is stored under the two inbox storage keys."""
        store = MemoryStore()
        kp = KeyVault(store).get_or_create_device_key()
        snap = store.snapshot()
        assert snap[PUBLIC_KEY_STORAGE_KEY] == kp.public_key_base58
        assert set(snap) == {PUBLIC_KEY_STORAGE_KEY, SECRET_KEY_STORAGE_KEY}

    def test_get_device_key_absent(self, vault):
        """No key is created by a plain lookup."""
        assert vault.get_device_key() is None

    def test_storage_unavailable_falls_back_to_ephemeral(self):
        """Without storage a usable but ephemeral key is returned."""
        vault = KeyVault(UnavailableStore())
        a = vault.get_or_create_device_key()
        b = vault.get_or_create_device_key()
        assert len(a.public_key) == 32
        assert a != b
        assert vault.get_device_key() is None

    def test_clear_device_key(self, vault):
        """Clearing removes the key; the next call creates a different one."""
        old = vault.get_or_create_device_key()
        vault.clear_device_key()
        assert vault.get_device_key() is None
        assert vault.get_or_create_device_key() != old

    def test_malformed_stored_key_ignored(self):
        """A corrupted store entry is treated as missing."""
        store = MemoryStore({PUBLIC_KEY_STORAGE_KEY: "abc", SECRET_KEY_STORAGE_KEY: "def"})
        assert KeyVault(store).get_device_key() is None

    def test_mismatched_stored_pair_ignored(self, recipient_keys):
        """A public key that is not the secret key's own is treated as missing."""
        other = IdentityKeyPair.generate()
        store = MemoryStore({
            PUBLIC_KEY_STORAGE_KEY: other.public_key_base58,
            SECRET_KEY_STORAGE_KEY: base58.b58encode(recipient_keys.secret_key).decode(),
        })
        assert KeyVault(store).get_device_key() is None

    def test_repr_hides_secret(self, recipient_keys):
        """The secret half never shows up in repr."""
        assert "secret" not in repr(recipient_keys)


class TestDerivedKey:
    """Tests for wallet-signature derived keys."""

    def test_deterministic(self):
        """Same signature bytes give the same keypair."""
        sig = bytes(range(64))
        assert derive_from_signature(sig) == derive_from_signature(sig)

    def test_different_signatures_differ(self):
        """Different signatures give different keypairs."""
        assert derive_from_signature(b"\x01" * 64) != derive_from_signature(b"\x02" * 64)

    def test_public_half_matches_secret(self):
        """Derived public key is the Curve25519 public key of the derived secret."""
        kp = derive_from_signature(b"\x09" * 64)
        assert IdentityKeyPair.from_secret(kp.secret_key) == kp

    def test_derive_does_not_touch_storage(self):
        """Derivation is pure and never persists anything."""
        store = MemoryStore()
        KeyVault(store).derive_from_signature(b"\x05" * 64)
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_unlock_with_signer_is_stable(self):
        """The same wallet unlocks the same inbox from a fresh session."""
        signer = KeypairSigner(bytes(SigningKey(b"\x11" * 32)) + SigningKey(b"\x11" * 32).verify_key.encode())
        first = await KeyVault(MemoryStore()).unlock_with_signer(signer)
        second = await KeyVault(MemoryStore()).unlock_with_signer(signer)
        assert first == second

    @pytest.mark.asyncio
    async def test_unlock_sets_session_key(self, vault):
        """Unlocking stores the derived key in the session only."""
        sk = SigningKey(b"\x12" * 32)
        signer = KeypairSigner(bytes(sk) + sk.verify_key.encode())
        kp = await vault.unlock_with_signer(signer)
        assert vault.get_session_key() == kp
        assert vault.get_device_key() is None
        vault.clear_session_key()
        assert vault.get_session_key() is None


class TestResolveKeys:
    """Tests for decryption key ordering."""

    def test_session_first_then_device(self, vault):
        """Session key is tried before the device key."""
        device = vault.get_or_create_device_key()
        session = derive_from_signature(b"\x03" * 64)
        vault.set_session_key(session)
        assert resolve_decryption_keys(vault) == [session, device]

    def test_no_keys(self, vault):
        """Locked inbox with no device key raises."""
        with pytest.raises(NoDecryptionKey):
            resolve_decryption_keys(vault)


class TestExportImport:
    """Tests for key backup."""

    def test_export_format(self, vault):
        """Export is JSON with base64 publicKey and secretKey."""
        kp = vault.get_or_create_device_key()
        data = json.loads(vault.export_keys())
        assert base64.b64decode(data["publicKey"]) == kp.public_key
        assert base64.b64decode(data["secretKey"]) == kp.secret_key

    def test_import_restores_key(self, vault):
        """An exported key imported elsewhere becomes that device key."""
        kp = vault.get_or_create_device_key()
        other = KeyVault(MemoryStore())
        assert other.import_keys(vault.export_keys()) == kp
        assert other.get_device_key() == kp

    @pytest.mark.parametrize(
        "payload,fragment",
        [
            ("not json", "Expected JSON"),
            ("{}", "Missing fields"),
            ('{"publicKey": 1, "secretKey": 2}', "must be strings"),
            ('{"publicKey": "%%%", "secretKey": "%%%"}', "base64"),
            (json.dumps({"publicKey": base64.b64encode(b"a" * 31).decode(),
                         "secretKey": base64.b64encode(b"b" * 32).decode()}), "Invalid key lengths"),
            (json.dumps({"publicKey": base64.b64encode(bytes(32)).decode(),
                         "secretKey": base64.b64encode(b"b" * 32).decode()}), "does not match"),
        ],
    )
    def test_invalid_import_rejected(self, payload, fragment):
        """Invalid backups are rejected and storage is left untouched."""
        store = MemoryStore()
        vault = KeyVault(store)
        existing = vault.get_or_create_device_key()
        before = store.snapshot()

        with pytest.raises(InvalidKeyFormat) as exc:
            vault.import_keys(payload)

        assert fragment in exc.value.message
        assert store.snapshot() == before
        assert vault.get_device_key() == existing

    def test_failed_import_never_advertises_torn_pair(self, recipient_keys):
        """A write that dies half way leaves no key that nothing can decrypt for."""
        store = _TornWriteStore({
            PUBLIC_KEY_STORAGE_KEY: recipient_keys.public_key_base58,
            SECRET_KEY_STORAGE_KEY: base58.b58encode(recipient_keys.secret_key).decode(),
        })
        vault = KeyVault(store)
        exported = KeyVault(MemoryStore()).export_keys()

        with pytest.raises(StorageUnavailable):
            vault.import_keys(exported)

        assert store.snapshot()[PUBLIC_KEY_STORAGE_KEY] != recipient_keys.public_key_base58
        assert vault.get_device_key() is None

    def test_parse_exported_keys(self, recipient_keys):
        """Parsing alone does not need a vault."""
        exported = json.dumps({
            "publicKey": base64.b64encode(recipient_keys.public_key).decode(),
            "secretKey": base64.b64encode(recipient_keys.secret_key).decode(),
        })
        assert parse_exported_keys(exported) == recipient_keys


class TestJsonFileStore:
    """Tests for the on-disk store."""

    def test_roundtrip_across_instances(self, tmp_path):
        """A key written by one vault is read by another on the same file."""
        path = tmp_path / "keys" / "inbox.json"
        kp = KeyVault(JsonFileStore(path)).get_or_create_device_key()
        assert KeyVault(JsonFileStore(path)).get_device_key() == kp

    def test_import_is_one_write(self, tmp_path, monkeypatch, recipient_keys):
        """Both halves of an imported key land in a single file rewrite."""
        path = tmp_path / "inbox.json"
        vault = KeyVault(JsonFileStore(path))
        vault.import_keys(json.dumps({
            "publicKey": base64.b64encode(recipient_keys.public_key).decode(),
            "secretKey": base64.b64encode(recipient_keys.secret_key).decode(),
        }))
        saves = []
        original = JsonFileStore._save
        monkeypatch.setattr(JsonFileStore, "_save", lambda self, st: (saves.append(dict(st)), original(self, st)))

        vault.import_keys(KeyVault(MemoryStore()).export_keys())

        assert len(saves) == 1
        assert vault.get_device_key() is not None
        assert vault.get_device_key() != recipient_keys

    def test_unreadable_file_is_storage_unavailable(self, tmp_path):
        """Corrupt JSON surfaces as StorageUnavailable."""
        path = tmp_path / "inbox.json"
        path.write_text("{broken")
        with pytest.raises(StorageUnavailable):
            JsonFileStore(path).get(PUBLIC_KEY_STORAGE_KEY)
