import json
import logging
import os
import stat
from pathlib import Path

from typing_extensions import Protocol

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Synchronous client-local storage shared by every login context."""

    def set(self, key: str, value: str): ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str): ...

    def pop(self, key: str) -> str | None:
        """Get and delete a key. Returns None if key doesn't exist."""
        ...


class MemoryStorage:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def set(self, key: str, value: str):
        self.data[key] = value

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def delete(self, key: str):
        self.data.pop(key, None)

    def pop(self, key: str) -> str | None:
        return self.data.pop(key, None)


class FileStorage:
    """JSON file storage, chmod 0600 (owner-only read/write).

    The file is re-read on every access so that separate processes sharing
    the same path see each other's writes.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read storage file {self.path}: {str(e)}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed storage file {self.path}")
            return {}

        return {str(key): str(value) for key, value in data.items()}

    def _save(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2))
        os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)

    def set(self, key: str, value: str):
        data = self._load()
        data[key] = value
        self._save(data)

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def delete(self, key: str):
        data = self._load()

        if data.pop(key, None) is not None:
            self._save(data)

    def pop(self, key: str) -> str | None:
        data = self._load()
        value = data.pop(key, None)

        if value is not None:
            self._save(data)

        return value
