# medreminder/notify.py
# Narrow contract over the OS notification subsystem, plus the in-process
# implementation used on desktop and in tests.
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

from .logs import logger

CHANNEL_REMINDERS = "medication-reminders"
CHANNEL_LOW_STOCK = "low-stock-alerts"
CHANNEL_OUT_OF_STOCK = "out-of-stock"
CHANNEL_GENERAL = "general"

CHANNELS = {
    CHANNEL_REMINDERS: ("Medication Reminders", "Reminders to take your medications on time"),
    CHANNEL_LOW_STOCK: ("Low Stock Alerts", "Alerts when medication stock is running low"),
    CHANNEL_OUT_OF_STOCK: ("Out of Stock", "Critical alerts when medication is out of stock"),
    CHANNEL_GENERAL: ("General Notifications", "General app notifications"),
}

EVENT_DELIVERED = "delivered"
EVENT_INTERACTED = "interacted"

Result = Tuple[bool, Optional[str]]


@dataclass(frozen=True)
class DailyTrigger:
    hour: int
    minute: int
    repeats: bool = True

    @classmethod
    def at(cls, hhmm: str) -> "DailyTrigger":
        h, m = hhmm.split(":")
        return cls(int(h), int(m))

    @property
    def hhmm(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    def instant_on(self, now: datetime) -> datetime:
        return now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)

    def next_after(self, now: datetime) -> datetime:
        dt = self.instant_on(now)
        if dt <= now:
            dt += timedelta(days=1)
        return dt


@dataclass(frozen=True)
class NotificationContent:
    title: str
    body: str
    channel: str = CHANNEL_REMINDERS
    data: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class NotificationEvent:
    kind: str          # EVENT_DELIVERED | EVENT_INTERACTED
    identity: str
    at: Optional[datetime] = None


class Notifier:
    """What the engine needs from the notification subsystem.

    ``schedule``, ``cancel`` and ``present`` return ``(ok, error)`` and never
    raise, so one failed command cannot abort a reconciliation pass.
    """

    def __init__(self):
        self._listeners: List[Callable[[NotificationEvent], None]] = []

    def schedule(self, identity: str, content: NotificationContent, trigger: DailyTrigger) -> Result:
        raise NotImplementedError

    def cancel(self, identity: str) -> Result:
        raise NotImplementedError

    def list_scheduled(self) -> List[str]:
        raise NotImplementedError

    def present(self, content: NotificationContent) -> Result:
        raise NotImplementedError

    def poll_events(self) -> List[NotificationEvent]:
        return []

    def subscribe(self, callback: Callable[[NotificationEvent], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def emit(self, event: NotificationEvent):
        for cb in list(self._listeners):
            try:
                cb(event)
            except Exception:
                logger.exception(f"notification listener failed for {event.identity}")


class LocalNotifier(Notifier):
    """Keeps the schedule in memory and "delivers" by logging (desktop / fallback)."""

    def __init__(self, clock=None):
        super().__init__()
        self.clock = clock
        self._lock = RLock()
        self._scheduled: Dict[str, Tuple[NotificationContent, DailyTrigger]] = {}
        self.presented: List[NotificationContent] = []
        self._last_fire_check: Optional[datetime] = None

    def schedule(self, identity, content, trigger):
        with self._lock:
            self._scheduled[identity] = (content, trigger)
        logger.info(f"[Simulated alarm] {identity} daily @ {trigger.hhmm}")
        return True, None

    def cancel(self, identity):
        with self._lock:
            self._scheduled.pop(identity, None)
        return True, None

    def list_scheduled(self):
        with self._lock:
            return sorted(self._scheduled)

    def get(self, identity: str) -> Optional[Tuple[NotificationContent, DailyTrigger]]:
        with self._lock:
            return self._scheduled.get(identity)

    def present(self, content):
        with self._lock:
            self.presented.append(content)
        logger.info(f"[Simulated notification] {content.title} - {content.body}")
        return True, None

    def _fire(self, now: datetime) -> List[NotificationEvent]:
        """Deliver every entry whose trigger minute falls in (previous check, now]."""
        with self._lock:
            since = self._last_fire_check or (now - timedelta(minutes=1))
            self._last_fire_check = now
            due = []
            for ident, (content, trigger) in sorted(self._scheduled.items()):
                at = trigger.instant_on(now)
                if at > now:
                    at -= timedelta(days=1)
                if since < at <= now:
                    due.append((ident, content, at))
        events = []
        for ident, content, at in due:
            logger.info(f"[in-app reminder] {content.title} - {content.body}")
            ev = NotificationEvent(EVENT_DELIVERED, ident, at)
            events.append(ev)
            self.emit(ev)
        return events

    def fire_due(self, now: datetime) -> List[str]:
        return [ev.identity for ev in self._fire(now)]

    def poll_events(self) -> List[NotificationEvent]:
        if self.clock is None:
            return []
        return self._fire(self.clock.now())
