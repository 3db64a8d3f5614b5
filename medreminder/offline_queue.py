# medreminder/offline_queue.py
# Durable FIFO of remote mutations that could not be applied immediately.
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Set

from .config import Settings
from .logs import logger
from .storage import KeyValueStore, LocalClock

QUEUE_KEY = "queue:pending"
ATTEMPTS_KEY = "queue:attempts"
DEAD_KEY = "queue:dead"


class ActionKind(str, Enum):
    UPSERT_MEDICATION = "UpsertMedication"
    MARK_DOSE_TAKEN = "MarkDoseTaken"
    DELETE_MEDICATION = "DeleteMedication"


@dataclass(frozen=True)
class QueuedAction:
    kind: ActionKind
    payload: Dict[str, Any] = field(hash=False)
    enqueued_at: str = ""
    action_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def medicine_id(self) -> Optional[str]:
        mid = self.payload.get("medicine_id") or self.payload.get("id")
        return str(mid) if mid else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "QueuedAction":
        return cls(
            kind=ActionKind(d["kind"]),
            payload=dict(d.get("payload") or {}),
            enqueued_at=d.get("enqueued_at") or "",
            action_id=d["action_id"],
        )


@dataclass
class DrainResult:
    processed: int
    remaining: List[QueuedAction]
    dead_lettered: List[QueuedAction] = field(default_factory=list)
    skipped: bool = False


class OfflineQueue:
    def __init__(self, store: KeyValueStore, connectivity, clock: Optional[LocalClock] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.connectivity = connectivity
        self.clock = clock or LocalClock()
        self.settings = settings or Settings()
        self._drain_lock = Lock()

    # -------------------------
    # Queue contents
    # -------------------------
    def enqueue(self, kind: ActionKind, payload: Dict[str, Any]) -> QueuedAction:
        action = QueuedAction(ActionKind(kind), dict(payload), self.clock.now().isoformat())
        self.store.update(QUEUE_KEY, lambda q: q + [action.to_dict()], default=[])
        logger.info(f"queued {action.kind.value} {action.action_id}")
        return action

    def _load(self, key: str) -> List[QueuedAction]:
        out = []
        for d in self.store.get(key, []) or []:
            try:
                out.append(QueuedAction.from_dict(d))
            except (KeyError, ValueError, TypeError):
                logger.warning(f"dropping unreadable queue entry: {d!r}")
        return out

    def pending(self) -> List[QueuedAction]:
        return self._load(QUEUE_KEY)

    def has_pending(self, medicine_id: Optional[str]) -> bool:
        if not medicine_id:
            return False
        return any(a.medicine_id == str(medicine_id) for a in self.pending())

    def dead_letters(self) -> List[QueuedAction]:
        return self._load(DEAD_KEY)

    def clear(self):
        self.store.delete(QUEUE_KEY)
        self.store.delete(ATTEMPTS_KEY)

    def _remove(self, action_id: str):
        self.store.update(QUEUE_KEY, lambda q: [d for d in q if d.get("action_id") != action_id], default=[])

    def _set_attempts(self, action_id: str, state: Optional[Dict[str, Any]]):
        def _apply(attempts):
            if state is None:
                attempts.pop(action_id, None)
            else:
                attempts[action_id] = state
            return attempts
        self.store.update(ATTEMPTS_KEY, _apply, default={})

    def backoff(self, attempts: int) -> timedelta:
        s = self.settings.queue_backoff_base_s * (2 ** max(0, attempts - 1))
        return timedelta(seconds=min(s, self.settings.queue_backoff_max_s))

    # -------------------------
    # Replay
    # -------------------------
    def is_online(self) -> bool:
        try:
            return bool(self.connectivity.is_connected())
        except Exception:
            logger.exception("connectivity probe failed")
            return False

    def drain(self, processor: Callable[[QueuedAction], Any]) -> DrainResult:
        """Replay queued actions in FIFO order, one at a time.

        An action leaves the queue only once ``processor`` returned without
        raising (or when it is dead-lettered). Failed actions keep their place,
        and so does every later action for the same medicine.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.info("queue drain already running")
            return DrainResult(0, self.pending(), skipped=True)
        try:
            if not self.is_online():
                return DrainResult(0, self.pending(), skipped=True)

            processed = 0
            dead: List[QueuedAction] = []
            attempts = self.store.get(ATTEMPTS_KEY, {}) or {}
            now = self.clock.now()
            blocked: Set[str] = set()

            for action in self.pending():
                mid = action.medicine_id
                if mid is not None and mid in blocked:
                    continue

                state = attempts.get(action.action_id) or {}
                next_at = state.get("next_at")
                if next_at and datetime.fromisoformat(next_at) > now:
                    if mid is not None:
                        blocked.add(mid)
                    continue

                try:
                    processor(action)
                except Exception as e:
                    if mid is not None:
                        blocked.add(mid)
                    n = int(state.get("attempts", 0)) + 1
                    limit = self.settings.queue_max_attempts
                    if not getattr(e, "retryable", True) or (limit > 0 and n >= limit):
                        logger.error(f"dead-lettering {action.kind.value} {action.action_id} after {n} attempt(s): {e}")
                        self._dead_letter(action, str(e), n)
                        dead.append(action)
                    else:
                        logger.warning(f"queue action {action.kind.value} failed, will retry: {e}")
                        self._set_attempts(action.action_id, {
                            "attempts": n,
                            "next_at": (now + self.backoff(n)).isoformat(),
                            "last_error": str(e),
                        })
                    continue

                self._remove(action.action_id)
                if state:
                    self._set_attempts(action.action_id, None)
                processed += 1

            remaining = self.pending()
            if processed or dead:
                logger.info(f"queue drained: processed={processed} dead={len(dead)} remaining={len(remaining)}")
            return DrainResult(processed, remaining, dead)
        finally:
            self._drain_lock.release()

    def _dead_letter(self, action: QueuedAction, error: str, attempts: int):
        record = action.to_dict()
        record.update({"error": error, "attempts": attempts, "dead_at": self.clock.now().isoformat()})
        self.store.update(DEAD_KEY, lambda d: d + [record], default=[])
        self._remove(action.action_id)
        self._set_attempts(action.action_id, None)
