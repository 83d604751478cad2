"""JSON file credential store.

Stores OAuth tokens, registered clients and approval records in a single
JSON document with owner-only permissions.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class JsonFileCredentialStore:
    """Credential store persisted to a JSON file with 0600 permissions."""

    def __init__(self, filepath: Path) -> None:
        """Initialize file-backed store.

        Args:
            filepath: Location of the JSON document. Parent directories are
                created on first write.
        """
        self._filepath = Path(filepath).expanduser()
        self._lock = asyncio.Lock()

    @property
    def filepath(self) -> Path:
        return self._filepath

    def _read_all(self) -> dict[str, Any]:
        if not self._filepath.exists():
            return {}
        try:
            data = json.loads(self._filepath.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Credential store at {self._filepath} is unreadable, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Credential store at {self._filepath} is not a JSON object, ignoring")
            return {}
        return data

    def _write_all(self, data: dict[str, Any]) -> None:
        self._filepath.parent.mkdir(parents=True, exist_ok=True)
        self._filepath.write_text(json.dumps(data, indent=2))
        os.chmod(self._filepath, 0o600)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            return self._read_all().get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = self._read_all()
            data[key] = value
            self._write_all(data)
            logger.debug(f"Saved credential entry: {key}")

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._read_all()
            if key in data:
                del data[key]
                self._write_all(data)
                logger.debug(f"Removed credential entry: {key}")
