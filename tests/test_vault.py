import base64

from storage import JsonFileStore, MemoryStore
from vault import KEY_ENTRY, LEGACY_ENTRY, SECRET_ENTRY, SecretVault


def test_store_then_load_round_trips(vault, kv):
    vault.store("sk-or-secret")
    assert vault.load() == "sk-or-secret"
    assert "sk-or-secret" not in (kv.get(SECRET_ENTRY) or "")
    assert vault.has_secret()


def test_load_without_anything_is_empty(vault):
    assert vault.load() == ""
    assert not vault.has_secret()


def test_each_store_uses_a_fresh_nonce(vault, kv):
    vault.store("same")
    first = kv.get(SECRET_ENTRY)
    vault.store("same")
    second = kv.get(SECRET_ENTRY)
    assert first != second
    assert base64.b64decode(first)[:12] != base64.b64decode(second)[:12]


def test_remove_clears_blob_and_key(vault, kv):
    vault.store("secret")
    vault.remove()
    assert vault.load() == ""
    assert kv.keys() == []


def test_storing_empty_secret_removes(vault, kv):
    vault.store("secret")
    vault.store("")
    assert vault.load() == ""
    assert kv.get(SECRET_ENTRY) is None


def test_legacy_plaintext_is_migrated():
    kv = MemoryStore({LEGACY_ENTRY: "sk-legacy"})
    vault = SecretVault(kv)
    assert vault.load() == "sk-legacy"
    assert kv.get(LEGACY_ENTRY) is None
    assert kv.get(SECRET_ENTRY)
    assert vault.load() == "sk-legacy"


def test_corrupted_blob_degrades_to_absent(kv):
    resets = []
    vault = SecretVault(kv, on_reset=resets.append)
    vault.store("secret")
    blob = bytearray(base64.b64decode(kv.get(SECRET_ENTRY)))
    blob[-1] ^= 0xFF
    kv.set(SECRET_ENTRY, base64.b64encode(bytes(blob)).decode("ascii"))

    assert vault.load() == ""
    assert kv.get(SECRET_ENTRY) is None
    assert kv.get(KEY_ENTRY) is None
    assert resets == ["decryption failed"]


def test_lost_key_degrades_to_absent(vault, kv):
    vault.store("secret")
    kv.remove(KEY_ENTRY)
    assert vault.load() == ""
    assert kv.get(SECRET_ENTRY) is None


def test_garbage_blob_degrades_to_absent(vault, kv):
    vault.store("secret")
    kv.set(SECRET_ENTRY, "not base64 !!")
    assert vault.load() == ""
    vault.store("secret")
    kv.set(SECRET_ENTRY, base64.b64encode(b"short").decode("ascii"))
    assert vault.load() == ""


def test_survives_restart_with_file_store(tmp_path):
    path = tmp_path / "storage.json"
    SecretVault(JsonFileStore(path)).store("persisted")
    assert SecretVault(JsonFileStore(path)).load() == "persisted"
    assert "persisted" not in path.read_text(encoding="utf-8")
