# agenda_agents/kvstore.py
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .utils import json_safe

log = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> List[str]:
        ...


class MemoryKV:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json_safe(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class JsonFileKV(MemoryKV):
    """
    Key-value document persisted as one JSON file.

    The file is read lazily on first access and rewritten through a temp file
    in the same directory followed by ``os.replace``, so a crash mid-write
    leaves the previous document intact.
    """

    def __init__(self, path: str | os.PathLike):
        super().__init__()
        self.path = Path(path)
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            log.warning("kv file %s unreadable, starting empty: %s", self.path, e)
            return
        if isinstance(raw, dict):
            self._data.update(raw)
        else:
            log.warning("kv file %s is not an object, starting empty", self.path)

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".kv-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            self._load()
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._load()
            self._data[key] = json_safe(value)
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            self._load()
            if key in self._data:
                del self._data[key]
                self._flush()

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            self._load()
            return sorted(k for k in self._data if k.startswith(prefix))
