import json
import os
import threading
from pathlib import Path
from typing import Optional, Protocol

HOME_ENV = "MINDGRAPH_HOME"
_STORAGE_FILENAME = "storage.json"


def data_dir() -> Path:
    override = os.getenv(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mindgraph"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStore:
    """Dictionary-backed store; used by tests and offline sessions."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._values)


class JsonFileStore:
    """Single JSON object on disk holding every persisted string value.

    Writes go to a sibling temp file first and are renamed into place. An
    unreadable file is treated as empty.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else data_dir() / _STORAGE_FILENAME
        self._lock = threading.Lock()

    def _read_locked(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError):
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    def _write_locked(self, values: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        scratch = self.path.with_suffix(self.path.suffix + ".tmp")
        scratch.write_text(json.dumps(values, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(scratch, self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_locked().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            values = self._read_locked()
            values[key] = value
            self._write_locked(values)

    def remove(self, key: str) -> None:
        with self._lock:
            values = self._read_locked()
            if key not in values:
                return
            del values[key]
            self._write_locked(values)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._read_locked())
