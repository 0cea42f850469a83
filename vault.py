import base64
import binascii
import os
import threading
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from storage import KeyValueStore

KEY_ENTRY = "vault.key"
SECRET_ENTRY = "vault.secret"
LEGACY_ENTRY = "openrouter_api_key"
NONCE_SIZE = 12


class SecretVault:
    """AES-GCM protected credential stored in a key-value store.

    The key is generated on first use and persisted next to the blob. Any
    failure to decrypt is treated as "no credential": the unusable blob and key
    are dropped so the user is simply asked for the secret again.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        on_reset: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._kv = store
        self._on_reset = on_reset
        self._lock = threading.Lock()

    def _load_key_locked(self) -> Optional[bytes]:
        encoded = self._kv.get(KEY_ENTRY)
        if not encoded:
            return None
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(key) not in (16, 24, 32):
            return None
        return key

    def _key_locked(self) -> bytes:
        key = self._load_key_locked()
        if key is None:
            key = AESGCM.generate_key(bit_length=256)
            self._kv.set(KEY_ENTRY, base64.b64encode(key).decode("ascii"))
        return key

    def _encrypt_locked(self, secret: str) -> None:
        key = self._key_locked()
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(key).encrypt(nonce, secret.encode("utf-8"), None)
        blob = base64.b64encode(nonce + ciphertext).decode("ascii")
        self._kv.set(SECRET_ENTRY, blob)
        self._kv.remove(LEGACY_ENTRY)

    def _discard_locked(self, reason: str) -> None:
        self._kv.remove(SECRET_ENTRY)
        self._kv.remove(KEY_ENTRY)
        if self._on_reset is not None:
            self._on_reset(reason)

    def store(self, secret: str) -> None:
        if not secret:
            self.remove()
            return
        with self._lock:
            self._encrypt_locked(secret)

    def load(self) -> str:
        with self._lock:
            blob = self._kv.get(SECRET_ENTRY)
            if not blob:
                legacy = self._kv.get(LEGACY_ENTRY)
                if not legacy:
                    return ""
                self._encrypt_locked(legacy)
                return legacy

            key = self._load_key_locked()
            if key is None:
                self._discard_locked("key missing")
                return ""
            try:
                raw = base64.b64decode(blob, validate=True)
            except (binascii.Error, ValueError):
                self._discard_locked("blob not base64")
                return ""
            if len(raw) <= NONCE_SIZE:
                self._discard_locked("blob truncated")
                return ""
            nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
            try:
                plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
                return plaintext.decode("utf-8")
            except (InvalidTag, UnicodeDecodeError):
                self._discard_locked("decryption failed")
                return ""

    def remove(self) -> None:
        with self._lock:
            self._kv.remove(SECRET_ENTRY)
            self._kv.remove(LEGACY_ENTRY)
            self._kv.remove(KEY_ENTRY)

    def has_secret(self) -> bool:
        return bool(self.load())
