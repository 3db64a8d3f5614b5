# medreminder/reconcile.py
# Level-triggered convergence of the live notification schedule toward the
# desired one. Safe to run any number of times; a second pass with no state
# change issues no schedule or cancel calls.
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .config import Settings
from .identity import DIGEST_SCOPE, parse_identity, slot_identities
from .logs import logger
from .models import Medication
from .notify import Notifier
from .schedule import PlannedNotification, plan_digest, plan_medication
from .sent_state import SentStateTracker
from .storage import KeyValueStore, LocalClock

LAST_RESCHEDULE_KEY = "meta:last_reschedule"


@dataclass
class ReconcileReport:
    scheduled: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return len(self.scheduled) + len(self.cancelled) + len(self.failed)


class Reconciler:
    def __init__(self, notifier: Notifier, sent_state: SentStateTracker, store: KeyValueStore,
                 clock: Optional[LocalClock] = None, settings: Optional[Settings] = None, lock=None):
        self.notifier = notifier
        self.sent_state = sent_state
        self.store = store
        self.clock = clock or LocalClock()
        self.settings = settings or Settings()
        self._lock = lock or RLock()

    # -------------------------
    # Desired / observed
    # -------------------------
    def desired_for_today(self, planned: Iterable[PlannedNotification], now: datetime) -> Dict[str, PlannedNotification]:
        desired = {}
        for p in planned:
            if p.trigger.instant_on(now) <= now:
                # already passed today; tomorrow's pass picks it up again
                continue
            if self.sent_state.has_fired_today(p.key):
                continue
            desired[p.key] = p
        return desired

    def live_by_scope(self) -> Dict[str, Set[str]]:
        scopes: Dict[str, Set[str]] = defaultdict(set)
        for raw in self.notifier.list_scheduled():
            ident = parse_identity(raw)
            if ident is None:
                continue
            scopes[ident.medicine_id].add(raw)
        return scopes

    # -------------------------
    # Commands
    # -------------------------
    def _cancel(self, key: str, report: ReconcileReport):
        ok, err = self.notifier.cancel(key)
        if ok:
            report.cancelled.append(key)
        else:
            logger.warning(f"cancel failed {key}: {err}")
            report.failed.append((key, err or "cancel failed"))

    def _schedule(self, p: PlannedNotification, report: ReconcileReport):
        ok, err = self.notifier.schedule(p.key, p.content, p.trigger)
        if ok:
            report.scheduled.append(p.key)
        else:
            logger.warning(f"schedule failed {p.key}: {err}")
            report.failed.append((p.key, err or "schedule failed"))

    def _converge(self, desired: Dict[str, PlannedNotification], live: Set[str], report: ReconcileReport):
        for key in sorted(live - set(desired)):
            self._cancel(key, report)
        for key in sorted(set(desired) - live):
            self._schedule(desired[key], report)

    # -------------------------
    # Passes
    # -------------------------
    def reconcile_all(self, medications: Iterable[Medication]) -> ReconcileReport:
        meds: Dict[str, Medication] = {}
        for med in medications:
            meds[med.id] = med

        report = ReconcileReport()
        with self._lock:
            now = self.clock.now()
            try:
                live = self.live_by_scope()
            except Exception as e:
                logger.exception("reading live notifications failed; pass abandoned")
                report.failed.append(("*", str(e)))
                return report

            for med in meds.values():
                try:
                    desired = self.desired_for_today(plan_medication(med, self.settings), now)
                    self._converge(desired, live.get(med.id, set()), report)
                except Exception as e:
                    logger.exception(f"reconcile failed for medicine {med.id}")
                    report.failed.append((med.id, str(e)))

            for scope, keys in live.items():
                if scope in meds or scope == DIGEST_SCOPE:
                    continue
                logger.info(f"cancelling {len(keys)} orphaned reminders for {scope}")
                self._converge({}, keys, report)

            try:
                digest = plan_digest(meds.values(), self.settings)
                desired = self.desired_for_today([digest] if digest else [], now)
                self._converge(desired, live.get(DIGEST_SCOPE, set()), report)
            except Exception as e:
                logger.exception("digest reconcile failed")
                report.failed.append((DIGEST_SCOPE, str(e)))

            try:
                self.store.set(LAST_RESCHEDULE_KEY, now.isoformat())
            except Exception:
                logger.exception("recording reschedule time failed")

        logger.info(
            f"reconciled {len(meds)} medicines: +{len(report.scheduled)} "
            f"-{len(report.cancelled)} failed={len(report.failed)}"
        )
        return report

    def cancel_medication(self, medicine_id: str) -> ReconcileReport:
        report = ReconcileReport()
        with self._lock:
            try:
                keys = self.live_by_scope().get(str(medicine_id), set())
            except Exception as e:
                logger.exception(f"reading live notifications failed for {medicine_id}")
                report.failed.append((str(medicine_id), str(e)))
                return report
            self._converge({}, keys, report)
        return report

    def cancel_dose(self, medicine_id: str, time: str) -> ReconcileReport:
        """Drop the reminders of a slot the user already acted on.

        The slot's identities are also flagged as handled for today so a later
        pass does not re-arm them.
        """
        report = ReconcileReport()
        with self._lock:
            for ident in slot_identities(medicine_id, time):
                key = ident.serialize()
                try:
                    self._cancel(key, report)
                    self.sent_state.mark_fired_today(key)
                except Exception as e:
                    logger.exception(f"cancel_dose failed for {key}")
                    report.failed.append((key, str(e)))
        return report

    def last_reschedule(self) -> Optional[str]:
        return self.store.get(LAST_RESCHEDULE_KEY)
