# medreminder/service.py
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta
from typing import Any, Dict, List, Optional

from .config import Settings
from .errors import (
    DoseAlreadyTaken,
    IdempotentConflict,
    MedicationNotFound,
    RemoteRejected,
    RemoteUnavailable,
    SlotNotScheduled,
)
from .identity import normalize_time, parse_identity
from .logs import logger
from .models import DoseLogEntry, DoseStatus, Medication
from .notify import NotificationEvent, Notifier
from .offline_queue import ActionKind, DrainResult, OfflineQueue
from .reconcile import ReconcileReport, Reconciler
from .remote import NeverConnected
from .sent_state import SentStateTracker
from .stock import StockAlert, StockMonitor
from .storage import KeyValueStore, LocalClock
from .sync import SyncReconciler

CACHE_KEY = "cache:medicines"
DOSELOG_PREFIX = "doselog:"


@dataclass
class DoseResult:
    log: DoseLogEntry
    medication: Medication
    offline: bool = False
    alert: Optional[StockAlert] = None


# -------------------------
# Periodic wake (desktop, and the Android service process)
# -------------------------
class BackgroundScheduler:
    def __init__(self, service: "ReminderService", interval_s: float = 30.0):
        self.service = service
        self.interval_s = float(interval_s)
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self):
        if self.running:
            return
        self.running = True
        self._stop.clear()
        self.thread = threading.Thread(target=self._loop, name="medreminder-bg", daemon=True)
        self.thread.start()
        logger.info("background scheduler started")

    def stop(self):
        self.running = False
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=2)
            self.thread = None

    def _loop(self):
        while self.running:
            try:
                self.service.tick()
            except Exception:
                logger.exception("background scheduler check failed")
            self._stop.wait(self.interval_s)


class ReminderService:
    """Owns the engine components; constructed once per process.

    Triggers: ``refresh`` on app start/foreground/login, ``save_medication`` /
    ``delete_medication`` / ``mark_dose_taken`` from the UI, ``tick`` from the
    background loop.
    """

    def __init__(self, settings: Settings, store: KeyValueStore, notifier: Notifier,
                 remote=None, connectivity=None, clock: Optional[LocalClock] = None):
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self.remote = remote
        self.clock = clock or LocalClock()

        self.sent_state = SentStateTracker(store, self.clock)
        self._schedule_lock = threading.RLock()
        self.reconciler = Reconciler(notifier, self.sent_state, store, self.clock, settings,
                                     lock=self._schedule_lock)
        self.stock = StockMonitor(store, notifier, self.clock, settings)
        self.queue = OfflineQueue(store, connectivity or NeverConnected(), self.clock, settings)
        self.sync = SyncReconciler(remote) if remote is not None else None

        self.scheduler: Optional[BackgroundScheduler] = None
        self._unsubscribe = None
        self._last_resync: Optional[datetime] = None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self, run_loop: bool = True):
        if self._unsubscribe is None:
            self._unsubscribe = self.notifier.subscribe(self.handle_event)
        if run_loop and self.scheduler is None:
            self.scheduler = BackgroundScheduler(self, self.settings.poll_interval_s)
            self.scheduler.start()
        logger.info("reminder service started")

    def stop(self):
        if self.scheduler:
            self.scheduler.stop()
            self.scheduler = None
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info("reminder service stopped")

    def tick(self):
        self.notifier.poll_events()
        if self.queue.pending():
            self.sync_now()
        now = self.clock.now()
        interval = timedelta(seconds=self.settings.resync_interval_s)
        if self._last_resync is None or now - self._last_resync >= interval:
            self.reconcile()
            self.check_stock()

    # -------------------------
    # Local medicine cache
    # -------------------------
    def medications(self) -> List[Medication]:
        out = []
        for rec in (self.store.get(CACHE_KEY, {}) or {}).values():
            try:
                out.append(Medication.from_record(rec))
            except (ValueError, TypeError):
                logger.warning(f"skipping unreadable cached medicine {rec.get('id')!r}")
        return out

    def get_medication(self, medicine_id: str) -> Optional[Medication]:
        rec = (self.store.get(CACHE_KEY, {}) or {}).get(str(medicine_id))
        return Medication.from_record(rec) if rec else None

    def _put_medication(self, med: Medication):
        def _apply(cache):
            cache[med.id] = med.to_record()
            return cache
        self.store.update(CACHE_KEY, _apply, default={})

    def _drop_medication(self, medicine_id: str):
        def _apply(cache):
            cache.pop(str(medicine_id), None)
            return cache
        self.store.update(CACHE_KEY, _apply, default={})

    # -------------------------
    # Notification events
    # -------------------------
    def handle_event(self, event: NotificationEvent):
        if parse_identity(event.identity) is None:
            return
        day = (event.at or self.clock.now()).date()
        self.sent_state.mark_fired(event.identity, day)
        logger.info(f"notification {event.kind}: {event.identity}")

    # -------------------------
    # Passes
    # -------------------------
    def reconcile(self) -> ReconcileReport:
        report = self.reconciler.reconcile_all(self.medications())
        self._last_resync = self.clock.now()
        return report

    def check_stock(self) -> Dict[str, StockAlert]:
        alerts = {}
        for med in self.medications():
            alert = self.stock.evaluate(med)
            if alert is not None:
                alerts[med.id] = alert
                self._flag_refill_alert(med)
        return alerts

    def _flag_refill_alert(self, med: Medication):
        """Record that the refill alert went out, locally and on the server.

        The server-side refill checker only alerts rows where the flag is
        still false, so the flag is mirrored to keep it from alerting again.
        """
        if med.refill_alert_sent:
            return
        med.refill_alert_sent = True
        self._put_medication(med)
        try:
            self._push(ActionKind.UPSERT_MEDICATION, med.to_record())
        except RemoteRejected as e:
            logger.error(f"refill flag for {med.id} rejected by server: {e}")

    def sync_now(self) -> DrainResult:
        if self.sync is None:
            return DrainResult(0, self.queue.pending(), skipped=True)
        return self.queue.drain(self.sync.process)

    def refresh(self) -> ReconcileReport:
        self.sync_now()
        self._pull_remote()
        report = self.reconcile()
        self.check_stock()
        self.cleanup()
        return report

    on_foreground = refresh

    def on_login(self, access_token: str, user_id: str) -> ReconcileReport:
        self.settings.access_token = access_token
        self.settings.user_id = user_id
        if self.remote is not None:
            self.remote.set_session(access_token, user_id)
        return self.refresh()

    def _pull_remote(self):
        if self.remote is None:
            return
        if not self.queue.is_online():
            logger.info("offline, using cached medicines")
            return
        try:
            rows = self.remote.fetch_medications()
        except RemoteUnavailable as e:
            logger.warning(f"fetching medicines failed, using cache: {e}")
            return

        meds: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            try:
                med = Medication.from_record(row)
            except (ValueError, TypeError):
                logger.warning(f"skipping malformed medicine row {row.get('id')!r}")
                continue
            meds[med.id] = med.to_record()

        # local edits still waiting in the queue win over the server copy
        for action in self.queue.pending():
            if action.kind == ActionKind.UPSERT_MEDICATION:
                meds[str(action.payload["id"])] = action.payload
            elif action.kind == ActionKind.DELETE_MEDICATION:
                meds.pop(str(action.payload["id"]), None)

        self.store.set(CACHE_KEY, meds)
        logger.info(f"medicines fetched: {len(meds)} records")

    def cleanup(self):
        today = self.clock.today()
        try:
            self.sent_state.purge_before(today)
            cutoff = (today - timedelta(days=self.settings.log_retention_days)).isoformat()
            for key in self.store.list_keys(DOSELOG_PREFIX):
                if key[len(DOSELOG_PREFIX):] < cutoff:
                    self.store.delete(key)
        except Exception:
            logger.exception("cleanup failed")

    # -------------------------
    # Mutations
    # -------------------------
    def save_medication(self, record: Dict[str, Any]) -> Medication:
        record = dict(record)
        if not record.get("id"):
            record["id"] = str(uuid.uuid4())
        if self.settings.user_id and not record.get("user_id"):
            record["user_id"] = self.settings.user_id
        med = Medication.from_record(record)

        threshold = self.settings.default_refill_threshold if med.refill_threshold is None else med.refill_threshold
        if med.quantity > threshold:
            # refilled: the next low-stock episode starts fresh
            med.refill_alert_sent = False

        saved = self._push(ActionKind.UPSERT_MEDICATION, med.to_record())
        if saved:
            try:
                med = Medication.from_record(saved)
            except (ValueError, TypeError):
                logger.warning(f"remote returned an unreadable row for {med.id}")

        self._put_medication(med)
        self.reconcile()
        if self.stock.evaluate(med) is not None:
            self._flag_refill_alert(med)
        return med

    def delete_medication(self, medicine_id: str):
        medicine_id = str(medicine_id)
        self._push(ActionKind.DELETE_MEDICATION, {"id": medicine_id})
        report = self.reconciler.cancel_medication(medicine_id)
        self._drop_medication(medicine_id)
        self.stock.reset(medicine_id)
        logger.info(f"medicine {medicine_id} deleted; cancelled {len(report.cancelled)} reminders")

    def _push(self, kind: ActionKind, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a mutation remotely, falling back to the offline queue on transient failure."""
        mid = payload.get("medicine_id") or payload.get("id")
        if self.remote is None or self.queue.has_pending(mid):
            # queued actions for this medicine go first
            self.queue.enqueue(kind, payload)
            return None
        try:
            if kind == ActionKind.UPSERT_MEDICATION:
                return self.remote.upsert_medication(payload)
            if kind == ActionKind.DELETE_MEDICATION:
                self.remote.delete_medication(payload["id"])
                return None
            return self.remote.mark_dose_taken(payload)
        except RemoteUnavailable as e:
            logger.warning(f"offline fallback for {kind.value}: {e}")
            self.queue.enqueue(kind, payload)
            return None

    # -------------------------
    # Dose taken
    # -------------------------
    def logs_for(self, day: date) -> List[DoseLogEntry]:
        return [DoseLogEntry.from_dict(d) for d in self.store.get(DOSELOG_PREFIX + day.isoformat(), []) or []]

    def todays_logs(self, medicine_id: Optional[str] = None) -> List[DoseLogEntry]:
        logs = self.logs_for(self.clock.today())
        if medicine_id is not None:
            logs = [e for e in logs if e.medicine_id == str(medicine_id)]
        return logs

    def _append_log(self, entry: DoseLogEntry):
        self.store.update(DOSELOG_PREFIX + entry.slot_date, lambda logs: logs + [entry.to_dict()], default=[])

    def _already_taken(self, medicine_id: str, slot: str, day: date) -> bool:
        return any(
            e.medicine_id == medicine_id and e.slot_time == slot and e.status == DoseStatus.TAKEN
            for e in self.logs_for(day)
        )

    def mark_dose_taken(self, medicine_id: str, scheduled_time: str,
                        quantity: Optional[int] = None, note: Optional[str] = None) -> DoseResult:
        med = self.get_medication(medicine_id)
        if med is None:
            raise MedicationNotFound(f"unknown medicine {medicine_id}")
        try:
            slot = normalize_time(scheduled_time)
        except ValueError:
            raise SlotNotScheduled(f"invalid scheduled time {scheduled_time!r}")
        if slot not in med.times:
            raise SlotNotScheduled(
                f"This medicine is not scheduled for {slot}. Please mark doses only at scheduled times."
            )

        now = self.clock.now()
        today = now.date()
        if self._already_taken(med.id, slot, today):
            raise DoseAlreadyTaken("This dose has already been taken for this scheduled time today")

        amount = int(quantity) if quantity else med.unit_per_dose
        h, m = map(int, slot.split(":"))
        payload = {
            "medicine_id": med.id,
            "scheduled_time": slot,
            "slot_date": today.isoformat(),
            "scheduled_at": datetime.combine(today, dtime(h, m)).astimezone().isoformat(),
            "taken_at": now.isoformat(),
            "quantity": amount,
            "note": note,
        }

        try:
            response = self._push(ActionKind.MARK_DOSE_TAKEN, payload)
        except IdempotentConflict:
            # taken already, from another device or an earlier replay
            self._append_log(DoseLogEntry(med.id, slot, today.isoformat(), now.isoformat(), note=note))
            self.reconciler.cancel_dose(med.id, slot)
            raise DoseAlreadyTaken("This dose has already been taken for this scheduled time today")
        offline = response is None

        remote_qty = (response or {}).get("quantity")
        new_qty = int(remote_qty) if isinstance(remote_qty, int) else max(0, med.quantity - amount)

        def _apply(cache):
            rec = cache.get(med.id)
            if rec is not None:
                rec["quantity"] = new_qty
            return cache
        self.store.update(CACHE_KEY, _apply, default={})
        med.quantity = new_qty

        entry = DoseLogEntry(med.id, slot, today.isoformat(), now.isoformat(), note=note, offline=offline)
        self._append_log(entry)

        report = self.reconciler.cancel_dose(med.id, slot)
        if report.failed:
            logger.warning(f"some reminders for {med.id} {slot} could not be cancelled: {report.failed}")

        alert = self.stock.evaluate(med)
        if alert is not None:
            self._flag_refill_alert(med)

        logger.info(f"dose taken {med.id} {slot} qty={new_qty} offline={offline}")
        return DoseResult(entry, med, offline, alert)

    # -------------------------
    # Diagnostics
    # -------------------------
    def status(self) -> Dict[str, Any]:
        try:
            live = len(self.notifier.list_scheduled())
        except Exception:
            logger.exception("listing notifications failed")
            live = -1
        return {
            "medicines": len(self.medications()),
            "live_notifications": live,
            "queued_actions": len(self.queue.pending()),
            "dead_letters": len(self.queue.dead_letters()),
            "last_reschedule": self.reconciler.last_reschedule(),
        }
