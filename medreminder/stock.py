# medreminder/stock.py
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from .config import Settings
from .logs import logger
from .models import Medication
from .notify import CHANNEL_LOW_STOCK, CHANNEL_OUT_OF_STOCK, NotificationContent, Notifier
from .storage import KeyValueStore, LocalClock

PREFIX = "cooldown:"


@dataclass(frozen=True)
class LowStockAlert:
    medicine_id: str
    quantity: int
    threshold: int

    def content(self, name: str) -> NotificationContent:
        plural = "" if self.quantity == 1 else "s"
        return NotificationContent(
            title="⚠️ Refill Reminder",
            body=f"{name}: {self.quantity} dose{plural} remaining. Please consider refilling soon.",
            channel=CHANNEL_LOW_STOCK,
            data={"type": "low-stock", "medicine_id": self.medicine_id},
        )


@dataclass(frozen=True)
class OutOfStockAlert:
    medicine_id: str

    def content(self, name: str) -> NotificationContent:
        return NotificationContent(
            title="🚨 Urgent: Medication Out of Stock",
            body=f"{name} has run out. Please refill immediately to continue your treatment.",
            channel=CHANNEL_OUT_OF_STOCK,
            data={"type": "out-of-stock", "medicine_id": self.medicine_id},
        )


StockAlert = Union[LowStockAlert, OutOfStockAlert]


def classify(med: Medication, default_threshold: int = 5) -> Optional[StockAlert]:
    threshold = default_threshold if med.refill_threshold is None else int(med.refill_threshold)
    if med.quantity == 0:
        return OutOfStockAlert(med.id)
    if 0 < med.quantity <= threshold:
        return LowStockAlert(med.id, med.quantity, threshold)
    return None


class StockMonitor:
    """Emits low/out-of-stock alerts, at most one per medicine per cooldown window.

    Both alert classes share one cooldown bucket per medicine.
    """

    def __init__(self, store: KeyValueStore, notifier: Notifier,
                 clock: Optional[LocalClock] = None, settings: Optional[Settings] = None):
        self.store = store
        self.notifier = notifier
        self.clock = clock or LocalClock()
        self.settings = settings or Settings()

    @property
    def cooldown(self) -> timedelta:
        return timedelta(hours=self.settings.stock_cooldown_hours)

    def last_alert_at(self, medicine_id: str) -> Optional[datetime]:
        raw = self.store.get(PREFIX + str(medicine_id))
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"unreadable cooldown record for {medicine_id}: {raw!r}")
            return None

    def in_cooldown(self, medicine_id: str, now: Optional[datetime] = None) -> bool:
        last = self.last_alert_at(medicine_id)
        if last is None:
            return False
        now = now or self.clock.now()
        return now - last < self.cooldown

    def evaluate(self, med: Medication) -> Optional[StockAlert]:
        try:
            alert = classify(med, self.settings.default_refill_threshold)
            if alert is None:
                return None
            now = self.clock.now()
            if self.in_cooldown(med.id, now):
                logger.info(f"stock alert for {med.id} suppressed (cooldown)")
                return None
            ok, err = self.notifier.present(alert.content(med.name or med.id))
            if not ok:
                logger.warning(f"stock alert for {med.id} not delivered: {err}")
                return None
            self.store.set(PREFIX + med.id, now.isoformat())
            logger.info(f"{type(alert).__name__} sent for {med.name or med.id} ({med.quantity} left)")
            return alert
        except Exception:
            logger.exception(f"stock evaluation failed for {med.id}")
            return None

    def reset(self, medicine_id: str):
        self.store.delete(PREFIX + str(medicine_id))
