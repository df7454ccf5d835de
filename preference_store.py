"""Durable per-client record of the last chosen instance."""
from __future__ import annotations

import logging
import time
from typing import List, Optional

from ide_errors import PreferenceStoreCorrupt
from ide_types import Preference
from kv_store import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "preference:"


class PreferenceStore:
    def __init__(self, store: KeyValueStore, retries: int = 3, retry_delay: float = 0.0) -> None:
        self.store = store
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self.degraded = False
        if store.corrupt:
            logger.warning("%s", PreferenceStoreCorrupt("state file was corrupt; starting without preferences"))

    @staticmethod
    def key(client_id: str) -> str:
        return f"{KEY_PREFIX}{client_id}"

    def load(self, client_id: str) -> Optional[Preference]:
        raw = self.store.get(self.key(client_id))
        if raw is None:
            return None
        try:
            pref = Preference.from_json(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "%s", PreferenceStoreCorrupt(f"ignoring preference for {client_id!r}: {exc}")
            )
            return None
        if pref.client_id != client_id:
            logger.warning("preference under %r names client %r; ignoring", client_id, pref.client_id)
            return None
        return pref

    def save(self, pref: Preference) -> bool:
        """Persist ``pref``; returns False once every retry has failed."""
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                self.store.set(self.key(pref.client_id), pref.to_json())
                self.degraded = False
                return True
            except (OSError, TypeError, ValueError) as exc:
                last_exc = exc
                logger.warning("saving preference for %s failed (attempt %d): %s", pref.client_id, attempt, exc)
                if self.retry_delay:
                    time.sleep(self.retry_delay)
        self.degraded = True
        logger.error("preference for %s not remembered: %s", pref.client_id, last_exc)
        return False

    def delete(self, client_id: str) -> bool:
        try:
            return self.store.delete(self.key(client_id))
        except OSError as exc:
            logger.error("could not delete preference for %s: %s", client_id, exc)
            return False

    def client_ids(self) -> List[str]:
        return sorted(key[len(KEY_PREFIX):] for key in self.store.keys(KEY_PREFIX))
