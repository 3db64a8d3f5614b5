# medreminder/sent_state.py
from datetime import date
from typing import Optional

from .logs import logger
from .storage import KeyValueStore, LocalClock

PREFIX = "sent:"


class SentStateTracker:
    """Per-day "already fired" flags, keyed ``sent:<YYYY-MM-DD>:<identity>``.

    The date component makes the flag roll over at local midnight without any
    explicit reset.
    """

    def __init__(self, store: KeyValueStore, clock: Optional[LocalClock] = None):
        self.store = store
        self.clock = clock or LocalClock()

    def _key(self, identity: str, day: Optional[date] = None) -> str:
        day = day or self.clock.today()
        return f"{PREFIX}{day.isoformat()}:{identity}"

    def has_fired_today(self, identity: str) -> bool:
        return bool(self.store.get(self._key(str(identity)), False))

    def mark_fired(self, identity: str, day: date):
        self.store.set(self._key(str(identity), day), True)

    def mark_fired_today(self, identity: str):
        self.mark_fired(identity, self.clock.today())

    def purge_before(self, day: date) -> int:
        cutoff = day.isoformat()
        removed = 0
        for key in self.store.list_keys(PREFIX):
            key_day = key[len(PREFIX):len(PREFIX) + 10]
            if key_day < cutoff:
                self.store.delete(key)
                removed += 1
        if removed:
            logger.info(f"purged {removed} sent-state records before {cutoff}")
        return removed
