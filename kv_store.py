"""Small JSON key-value file with atomic replacement on every write."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, Iterable, Iterator

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Keys such as ``preference:<client>`` or ``cache:<namespace>:<key>``.

    The whole table is rewritten to a temp file in the same directory and then
    renamed over the old one, so readers see either the old or the new file.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}
        self.corrupt = False
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
        except (OSError, ValueError) as exc:
            self.corrupt = True
            aside = f"{self.path}.corrupt"
            logger.warning("state file %s unreadable (%s); moving it to %s", self.path, exc, aside)
            try:
                os.replace(self.path, aside)
            except OSError:
                pass
            return
        self._data = data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def keys(self, prefix: str = "") -> Iterator[str]:
        return iter([key for key in self._data if key.startswith(prefix)])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            updated = dict(self._data)
            updated[key] = value
            self._write(updated)
            self._data = updated

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            updated = dict(self._data)
            updated.pop(key)
            self._write(updated)
            self._data = updated
            return True

    def delete_many(self, keys: Iterable[str]) -> int:
        with self._lock:
            doomed = {key for key in keys if key in self._data}
            if not doomed:
                return 0
            updated = {k: v for k, v in self._data.items() if k not in doomed}
            self._write(updated)
            self._data = updated
            return len(doomed)

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
