"""Key-value persistence for session drafts and subject history.

The session only talks to the KeyValueStore protocol. FileStore keeps every
key in one YAML (or JSON) document, written the same way as config files.

Author:
    PromptForge Contributors
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml

from .config import load_config_file, save_config_file

__author__ = 'PromptForge Contributors'
__all__ = ['KeyValueStore', 'MemoryStore', 'FileStore']

logger = logging.getLogger('promptforge.storage')


class KeyValueStore(Protocol):
    """Minimal persistence interface consumed by Session."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStore:
    """In-process store; values are deep-copied through JSON like a real backend."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return json.loads(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStore:
    """Single-document store on disk (YAML by default, JSON by suffix)."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = load_config_file(self.path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f'Could not read store {self.path}: {e}')
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        save_config_file(self.path, data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)
