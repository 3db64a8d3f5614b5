import os
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from medreminder.android import AndroidAlarmNotifier
from medreminder.android_gen import write_android_sources
from medreminder.config import Settings
from medreminder.crypto import aes_decrypt, aes_encrypt, get_or_create_key
from medreminder.errors import (
    ConfigurationError,
    DoseAlreadyTaken,
    IdempotentConflict,
    MedicationNotFound,
    RemoteRejected,
    RemoteUnavailable,
    SlotNotScheduled,
)
from medreminder.identity import identity, normalize_time, parse_identity, request_code
from medreminder.logs import install_logging, logger, ring_text
from medreminder.models import DoseLogEntry, Medication
from medreminder.notify import EVENT_DELIVERED, LocalNotifier, NotificationEvent
from medreminder.offline_queue import ActionKind, OfflineQueue
from medreminder.reconcile import Reconciler
from medreminder.remote import HttpConnectivityProbe, SupabaseRemote
from medreminder.schedule import format_time_12h, plan_digest, plan_medication, shift_time
from medreminder.sent_state import SentStateTracker
from medreminder.service import ReminderService
from medreminder.stock import LowStockAlert, OutOfStockAlert, StockMonitor
from medreminder.storage import EncryptedStore, MemoryStore
from medreminder.sync import SyncReconciler

DIGEST = "rx|*|21:00|summary"


class FakeClock:
    def __init__(self, now: datetime):
        self._now = now

    def now(self):
        return self._now

    def today(self):
        return self._now.date()

    def advance(self, **kw):
        self._now += timedelta(**kw)


class FakeConnectivity:
    def __init__(self, online=True):
        self.online = online
        self.checks = 0

    def is_connected(self):
        self.checks += 1
        return self.online


class FakeRemote:
    """Supabase stand-in: rows by id, one ``taken`` per (medicine, slot, day)."""

    def __init__(self):
        self.rows = {}
        self.taken = set()
        self.fail = {}
        self.calls = []

    def _check(self, name):
        if name in self.fail:
            raise self.fail[name]

    def set_session(self, access_token, user_id):
        self.calls.append(("session", user_id))

    def fetch_medications(self):
        self._check("fetch_medications")
        return [dict(r) for r in self.rows.values()]

    def upsert_medication(self, record):
        self._check("upsert_medication")
        self.calls.append(("upsert", record["id"]))
        self.rows[record["id"]] = dict(record)
        return dict(record)

    def delete_medication(self, medicine_id):
        self._check("delete_medication")
        self.calls.append(("delete", medicine_id))
        self.rows.pop(medicine_id, None)

    def mark_dose_taken(self, payload):
        self._check("mark_dose_taken")
        key = (payload["medicine_id"], payload["scheduled_time"], payload["slot_date"])
        if key in self.taken:
            raise IdempotentConflict("HTTP 409: dose already logged", 409)
        self.taken.add(key)
        self.calls.append(("taken",) + key)
        row = self.rows.get(payload["medicine_id"])
        if row is None:
            return {}
        row["quantity"] = max(0, int(row["quantity"]) - int(payload["quantity"]))
        return {"quantity": row["quantity"]}


def _med(mid="m1", times=("08:00", "20:00"), quantity=10, **kw):
    return Medication(id=mid, name=kw.pop("name", "Aspirin"), times=list(times), quantity=quantity, **kw)


# -------------------------
# Crypto / storage
# -------------------------
class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        self.assertEqual(aes_decrypt(aes_encrypt(pt, key), key), pt)

    def test_short_ciphertext_rejected(self):
        with self.assertRaises(InvalidTag):
            aes_decrypt(b"123", AESGCM.generate_key(bit_length=256))

    def test_key_is_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            kp = Path(td) / ".enc_key"
            k1 = get_or_create_key(kp)
            k2 = get_or_create_key(kp)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestEncryptedStore(unittest.TestCase):
    def test_persist_reopen_and_prefix(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state.db.aes"
            s = EncryptedStore(path, key, Path(td) / "tmp")
            s.set("sent:2026-03-02:rx|m1|08:00|due", True)
            s.set("Sent:other", 1)
            s.set("queue:pending", [{"n": 1}])
            s.update("queue:pending", lambda q: q + [{"n": 2}], default=[])

            reopened = EncryptedStore(path, key, Path(td) / "tmp")
            self.assertEqual(reopened.get("queue:pending"), [{"n": 1}, {"n": 2}])
            self.assertEqual(reopened.list_keys("sent:"), ["sent:2026-03-02:rx|m1|08:00|due"])
            self.assertIsNone(reopened.get("missing"))
            reopened.delete("queue:pending")
            self.assertEqual(s.get("queue:pending", []), [])

            self.assertNotIn(b"queue:pending", path.read_bytes())
            self.assertEqual(list((Path(td) / "tmp").iterdir()), [])

    def test_wrong_key_fails(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "state.db.aes"
            EncryptedStore(path, AESGCM.generate_key(bit_length=256)).set("a", 1)
            other = EncryptedStore(path, AESGCM.generate_key(bit_length=256))
            with self.assertRaises(InvalidTag):
                other.get("a")


# -------------------------
# Identity / schedule / models
# -------------------------
class TestIdentity(unittest.TestCase):
    def test_deterministic_and_normalized(self):
        a = identity("m1", "8:05", "due")
        self.assertEqual(a, "rx|m1|08:05|due")
        self.assertEqual(a, identity("m1", "08:05:00", "due"))
        self.assertNotEqual(a, identity("m1", "08:05", "post"))
        self.assertEqual(request_code(a), request_code("rx|m1|08:05|due"))
        self.assertLess(request_code(a), 2 ** 31)

    def test_parse(self):
        ident = parse_identity("rx|m1|08:05|post")
        self.assertEqual((ident.medicine_id, ident.time, ident.kind.value), ("m1", "08:05", "post"))
        self.assertTrue(parse_identity(DIGEST).is_digest)
        for raw in ("legacy-42", "rx|m1|8:05|post", "rx|m1|08:05|later", "rx||08:05|due", None):
            self.assertIsNone(parse_identity(raw), raw)

    def test_invalid_times(self):
        for bad in ("8:5", "24:00", "12:60", "noon", ""):
            with self.assertRaises(ValueError):
                normalize_time(bad)
        with self.assertRaises(ValueError):
            identity("a|b", "08:00", "due")


class TestSchedule(unittest.TestCase):
    def test_shift_wraps_both_ways(self):
        self.assertEqual(shift_time("00:02", -5), "23:57")
        self.assertEqual(shift_time("23:58", 5), "00:03")
        self.assertEqual(shift_time("12:00", 5), "12:05")
        self.assertEqual(format_time_12h("20:00"), "8:00 PM")
        self.assertEqual(format_time_12h("00:15"), "12:15 AM")

    def test_plan_medication(self):
        planned = plan_medication(_med(times=["08:00"]))
        self.assertEqual(
            [(p.key, p.trigger.hhmm) for p in planned],
            [("rx|m1|08:00|pre", "07:55"), ("rx|m1|08:00|due", "08:00"), ("rx|m1|08:00|post", "08:05")],
        )
        self.assertIn("Please take Aspirin now.", planned[1].content.body)
        self.assertIn("Missed Dose?", planned[2].content.title)

    def test_digest_is_per_user(self):
        self.assertIsNone(plan_digest([_med(times=["22:00"])]))
        d = plan_digest([_med("m1"), _med("m2", name="Ibuprofen")])
        self.assertEqual(d.key, DIGEST)
        self.assertIn("2 medicines", d.content.body)


class TestModels(unittest.TestCase):
    def test_from_record_normalizes(self):
        med = Medication.from_record({
            "id": "m1", "name": "Aspirin", "times": ["20:00", "8:00", "08:00"],
            "quantity": -3, "refill_threshold": "", "created_at": "2026-01-01",
        })
        self.assertEqual(med.times, ["08:00", "20:00"])
        self.assertEqual(med.quantity, 0)
        self.assertIsNone(med.refill_threshold)
        self.assertEqual(med.to_record()["created_at"], "2026-01-01")

    def test_record_without_id(self):
        with self.assertRaises(ValueError):
            Medication.from_record({"name": "x"})

    def test_log_slot_time(self):
        e = DoseLogEntry("m1", "2026-03-02T08:00:00+00:00", "2026-03-02", "2026-03-02T08:01:00")
        self.assertEqual(e.slot_time, "08:00")
        self.assertEqual(DoseLogEntry.from_dict(e.to_dict()), e)


# -------------------------
# Reconciliation
# -------------------------
class FlakyNotifier(LocalNotifier):
    def schedule(self, identity, content, trigger):
        if "|m2|" in identity:
            return False, "exact alarm permission denied"
        return super().schedule(identity, content, trigger)


class TestReconciler(unittest.TestCase):
    def _engine(self, now, notifier_cls=LocalNotifier):
        self.clock = FakeClock(now)
        self.store = MemoryStore()
        self.notifier = notifier_cls(self.clock)
        self.sent = SentStateTracker(self.store, self.clock)
        self.rec = Reconciler(self.notifier, self.sent, self.store, self.clock, Settings())

    def test_converges_and_is_idempotent(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        first = self.rec.reconcile_all([_med()])
        self.assertEqual(len(first.scheduled), 7)
        self.assertEqual(set(self.notifier.list_scheduled()), {
            "rx|m1|08:00|pre", "rx|m1|08:00|due", "rx|m1|08:00|post",
            "rx|m1|20:00|pre", "rx|m1|20:00|due", "rx|m1|20:00|post", DIGEST,
        })
        second = self.rec.reconcile_all([_med(), _med()])
        self.assertEqual(second.calls, 0)
        self.assertEqual(self.rec.last_reschedule(), "2026-03-02T07:00:00")

    def test_future_only_gate(self):
        self._engine(datetime(2026, 3, 2, 8, 2))
        self.rec.reconcile_all([_med(times=["08:00"])])
        self.assertEqual(set(self.notifier.list_scheduled()), {"rx|m1|08:00|post", DIGEST})
        self.assertEqual(self.notifier.get("rx|m1|08:00|post")[1].hhmm, "08:05")

    def test_trigger_at_exactly_now_is_skipped(self):
        self._engine(datetime(2026, 3, 2, 8, 0))
        self.rec.reconcile_all([_med(times=["08:00"])])
        self.assertNotIn("rx|m1|08:00|due", self.notifier.list_scheduled())

    def test_sent_today_gate_and_rollover(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        self.sent.mark_fired_today("rx|m1|08:00|post")
        self.rec.reconcile_all([_med(times=["08:00"])])
        self.assertNotIn("rx|m1|08:00|post", self.notifier.list_scheduled())

        self.clock.advance(days=1)
        report = self.rec.reconcile_all([_med(times=["08:00"])])
        self.assertEqual(report.scheduled, ["rx|m1|08:00|post"])

    def test_removed_time_and_orphans_are_cancelled(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        self.rec.reconcile_all([_med("m1"), _med("m2")])
        report = self.rec.reconcile_all([_med("m1", times=["08:00"])])
        live = self.notifier.list_scheduled()
        self.assertFalse([k for k in live if "|m2|" in k or "|20:00|" in k])
        self.assertIn("rx|m1|08:00|due", live)
        self.assertEqual(len(report.cancelled), 9)

    def test_digest_dropped_when_no_dose_before_it(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        self.rec.reconcile_all([_med(times=["08:00"])])
        self.rec.reconcile_all([_med(times=["22:00"])])
        self.assertNotIn(DIGEST, self.notifier.list_scheduled())

    def test_foreign_entries_are_left_alone(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        content = plan_medication(_med())[0].content
        self.notifier.schedule("legacy-42", content, plan_medication(_med())[0].trigger)
        self.rec.reconcile_all([])
        self.assertEqual(self.notifier.list_scheduled(), ["legacy-42"])

    def test_failed_schedule_does_not_abort_pass(self):
        self._engine(datetime(2026, 3, 2, 7, 0), FlakyNotifier)
        report = self.rec.reconcile_all([_med("m1", times=["08:00"]), _med("m2", times=["09:00"])])
        self.assertEqual(len(report.failed), 3)
        self.assertIn("rx|m1|08:00|due", self.notifier.list_scheduled())
        self.assertIn(DIGEST, self.notifier.list_scheduled())

    def test_cancel_dose_is_not_rearmed(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        self.rec.reconcile_all([_med()])
        report = self.rec.cancel_dose("m1", "08:00")
        self.assertEqual(len(report.cancelled), 3)
        self.assertEqual(self.rec.reconcile_all([_med()]).calls, 0)
        self.assertIn("rx|m1|20:00|due", self.notifier.list_scheduled())

    def test_cancel_medication(self):
        self._engine(datetime(2026, 3, 2, 7, 0))
        self.rec.reconcile_all([_med("m1"), _med("m2")])
        self.rec.cancel_medication("m2")
        self.assertFalse([k for k in self.notifier.list_scheduled() if "|m2|" in k])


# -------------------------
# Stock
# -------------------------
class FailingPresent(LocalNotifier):
    def present(self, content):
        return False, "notifications disabled"


class TestStockMonitor(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(datetime(2026, 3, 2, 9, 0))
        self.store = MemoryStore()
        self.notifier = LocalNotifier(self.clock)
        self.mon = StockMonitor(self.store, self.notifier, self.clock, Settings())

    def test_low_stock_cooldown(self):
        med = _med(quantity=3)
        self.assertIsInstance(self.mon.evaluate(med), LowStockAlert)
        self.assertIsNone(self.mon.evaluate(med))
        self.clock.advance(hours=23, minutes=59)
        self.assertIsNone(self.mon.evaluate(med))
        self.clock.advance(minutes=1)
        self.assertIsInstance(self.mon.evaluate(med), LowStockAlert)
        self.assertEqual(len(self.notifier.presented), 2)
        self.assertEqual(self.notifier.presented[0].channel, "low-stock-alerts")

    def test_out_of_stock_shares_bucket(self):
        self.assertIsInstance(self.mon.evaluate(_med(quantity=2)), LowStockAlert)
        self.assertIsNone(self.mon.evaluate(_med(quantity=0)))
        self.mon.reset("m1")
        alert = self.mon.evaluate(_med(quantity=0))
        self.assertIsInstance(alert, OutOfStockAlert)
        self.assertEqual(self.notifier.presented[-1].channel, "out-of-stock")

    def test_thresholds(self):
        self.assertIsNone(self.mon.evaluate(_med(quantity=6)))
        self.assertIsNone(self.mon.evaluate(_med(quantity=1, refill_threshold=0)))
        self.assertIsInstance(self.mon.evaluate(_med(quantity=5)), LowStockAlert)

    def test_failed_delivery_keeps_no_cooldown(self):
        mon = StockMonitor(self.store, FailingPresent(self.clock), self.clock, Settings())
        self.assertIsNone(mon.evaluate(_med(quantity=0)))
        self.assertFalse(mon.in_cooldown("m1"))


# -------------------------
# Offline queue / sync
# -------------------------
class TestOfflineQueue(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(datetime(2026, 3, 2, 9, 0))
        self.store = MemoryStore()
        self.net = FakeConnectivity(online=True)
        self.q = OfflineQueue(self.store, self.net, self.clock, Settings())

    def _fill(self, n=3):
        for i in range(1, n + 1):
            self.q.enqueue(ActionKind.UPSERT_MEDICATION, {"id": f"m{i}", "n": i})

    def test_offline_drain_is_noop(self):
        self._fill()
        self.net.online = False
        seen = []
        res = self.q.drain(seen.append)
        self.assertTrue(res.skipped)
        self.assertEqual(seen, [])
        self.assertEqual(len(res.remaining), 3)

    def test_fifo_with_partial_failure(self):
        self._fill()
        seen = []
        broken = {2}

        def processor(action):
            seen.append(action.payload["n"])
            if action.payload["n"] in broken:
                raise RemoteUnavailable("timeout")

        res = self.q.drain(processor)
        self.assertEqual(seen, [1, 2, 3])
        self.assertEqual(res.processed, 2)
        self.assertEqual([a.payload["n"] for a in res.remaining], [2])
        self.assertEqual(self.net.checks, 1)

        # still backing off
        self.assertEqual(self.q.drain(processor).processed, 0)
        self.assertEqual(seen, [1, 2, 3])

        broken.clear()
        self.clock.advance(seconds=31)
        res = self.q.drain(processor)
        self.assertEqual(res.processed, 1)
        self.assertEqual(res.remaining, [])
        self.assertEqual(self.store.get("queue:attempts"), {})

    def test_order_survives_restart(self):
        self._fill()
        again = OfflineQueue(self.store, self.net, self.clock, Settings())
        self.assertEqual([a.payload["n"] for a in again.pending()], [1, 2, 3])

    def test_rejected_action_is_dead_lettered(self):
        self._fill(2)

        def processor(action):
            if action.payload["n"] == 1:
                raise RemoteRejected("HTTP 400: bad times", 400)

        res = self.q.drain(processor)
        self.assertEqual(res.processed, 1)
        self.assertEqual([a.payload["n"] for a in res.dead_lettered], [1])
        self.assertEqual(self.q.pending(), [])
        self.assertEqual(len(self.q.dead_letters()), 1)

    def test_same_medicine_waits_behind_failure(self):
        self.q.enqueue(ActionKind.UPSERT_MEDICATION, {"id": "m1", "n": 1})
        self.q.enqueue(ActionKind.MARK_DOSE_TAKEN, {"medicine_id": "m1", "n": 2})
        self.q.enqueue(ActionKind.UPSERT_MEDICATION, {"id": "m2", "n": 3})
        seen = []

        def processor(action):
            seen.append(action.payload["n"])
            if action.payload["n"] == 1:
                raise RemoteUnavailable("HTTP 503")
            if action.payload["n"] == 2:
                raise RemoteRejected("HTTP 404: Medicine not found", 404)

        res = self.q.drain(processor)
        self.assertEqual(seen, [1, 3])
        self.assertEqual(res.dead_lettered, [])
        self.assertEqual([a.payload["n"] for a in res.remaining], [1, 2])

        # still blocked while the upsert backs off
        self.clock.advance(seconds=10)
        self.q.drain(processor)
        self.assertEqual(seen, [1, 3])
        self.assertEqual(self.q.dead_letters(), [])

        self.clock.advance(seconds=30)
        res = self.q.drain(lambda a: seen.append(a.payload["n"]))
        self.assertEqual(res.processed, 2)
        self.assertEqual(seen, [1, 3, 1, 2])

    def test_max_attempts(self):
        q = OfflineQueue(self.store, self.net, self.clock, Settings(queue_max_attempts=2))
        q.enqueue(ActionKind.MARK_DOSE_TAKEN, {"medicine_id": "m1"})

        def processor(action):
            raise RemoteUnavailable("HTTP 503")

        self.assertEqual(q.drain(processor).dead_lettered, [])
        self.clock.advance(seconds=31)
        self.assertEqual(len(q.drain(processor).dead_lettered), 1)
        self.assertEqual(q.pending(), [])

    def test_backoff_is_capped(self):
        self.assertEqual(self.q.backoff(1), timedelta(seconds=30))
        self.assertEqual(self.q.backoff(2), timedelta(seconds=60))
        self.assertEqual(self.q.backoff(50), timedelta(hours=6))

    def test_nested_drain_is_skipped(self):
        self._fill(1)
        inner = []
        self.q.drain(lambda a: inner.append(self.q.drain(lambda b: None)))
        self.assertTrue(inner[0].skipped)

    def test_conflict_counts_as_success(self):
        remote = FakeRemote()
        remote.taken.add(("m1", "08:00", "2026-03-02"))
        self.q.enqueue(ActionKind.MARK_DOSE_TAKEN, {
            "medicine_id": "m1", "scheduled_time": "08:00", "slot_date": "2026-03-02", "quantity": 1,
        })
        self.q.enqueue(ActionKind.DELETE_MEDICATION, {"id": "m9"})
        res = self.q.drain(SyncReconciler(remote))
        self.assertEqual(res.processed, 2)
        self.assertEqual(res.dead_lettered, [])
        self.assertEqual(remote.calls, [("delete", "m9")])


# -------------------------
# Remote
# -------------------------
class TestSupabaseRemote(unittest.TestCase):
    def _remote(self, handler):
        settings = Settings(supabase_url="https://demo.supabase.co", supabase_key="anon", user_id="u1")
        return SupabaseRemote(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_requires_configuration(self):
        with self.assertRaises(ConfigurationError):
            SupabaseRemote(Settings())

    def test_fetch_dedupes(self):
        def handler(request):
            self.assertEqual(request.url.params["user_id"], "eq.u1")
            self.assertEqual(request.headers["apikey"], "anon")
            return httpx.Response(200, json=[{"id": "a", "name": "old"}, {"id": "a", "name": "new"}, {"name": "x"}])

        rows = self._remote(handler).fetch_medications()
        self.assertEqual(rows, [{"id": "a", "name": "new"}])

    def test_upsert_merges_duplicates(self):
        def handler(request):
            self.assertEqual(request.url.params["on_conflict"], "id")
            self.assertIn("merge-duplicates", request.headers["prefer"])
            return httpx.Response(201, json=[{"id": "m1", "quantity": 4, "user_id": "u1"}])

        row = self._remote(handler).upsert_medication({"id": "m1", "quantity": 4})
        self.assertEqual(row["user_id"], "u1")

    def test_error_mapping(self):
        cases = [
            (httpx.Response(409, json={"message": "dose already logged"}), IdempotentConflict),
            (httpx.Response(400, json={"code": "23505", "message": "duplicate key"}), IdempotentConflict),
            (httpx.Response(503, text="upstream down"), RemoteUnavailable),
            (httpx.Response(429, json={"message": "slow down"}), RemoteUnavailable),
            (httpx.Response(400, json={"message": "bad request"}), RemoteRejected),
        ]
        for response, exc in cases:
            remote = self._remote(lambda request, r=response: r)
            with self.assertRaises(exc) as cm:
                remote.mark_dose_taken({"medicine_id": "m1", "quantity": 1})
            if exc is RemoteRejected:
                self.assertNotIsInstance(cm.exception, IdempotentConflict)
                self.assertFalse(cm.exception.retryable)

    def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("no route to host")

        with self.assertRaises(RemoteUnavailable):
            self._remote(handler).delete_medication("m1")

    def test_connectivity_probe(self):
        up = HttpConnectivityProbe("https://demo/auth/v1/health",
                                   client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
        down = HttpConnectivityProbe("https://demo/auth/v1/health",
                                     client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(502))))
        self.assertTrue(up.is_connected())
        self.assertFalse(down.is_connected())


# -------------------------
# Service
# -------------------------
class TestReminderService(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(datetime(2026, 3, 2, 7, 0))
        self.notifier = LocalNotifier(self.clock)
        self.remote = FakeRemote()
        self.net = FakeConnectivity(online=True)
        self.svc = ReminderService(Settings(), MemoryStore(), self.notifier, self.remote, self.net, self.clock)
        self.svc.start(run_loop=False)

    def tearDown(self):
        self.svc.stop()

    def _save(self, **kw):
        rec = {"id": "m1", "name": "Aspirin", "times": ["08:00", "20:00"], "quantity": 10}
        rec.update(kw)
        return self.svc.save_medication(rec)

    def test_save_schedules_reminders(self):
        self._save()
        self.assertEqual(self.svc.status()["live_notifications"], 7)
        self.assertEqual(self.remote.calls, [("upsert", "m1")])
        self.assertEqual(self.svc.reconcile().calls, 0)

    def test_save_assigns_id(self):
        med = self.svc.save_medication({"name": "Vitamin D", "times": ["09:00"], "quantity": 30})
        self.assertTrue(med.id)
        self.assertIsNotNone(self.svc.get_medication(med.id))

    def test_mark_dose_taken(self):
        self._save()
        self.clock.advance(minutes=58)
        res = self.svc.mark_dose_taken("m1", "08:00")
        self.assertFalse(res.offline)
        self.assertEqual(res.medication.quantity, 9)
        self.assertEqual(self.svc.get_medication("m1").quantity, 9)
        live = self.notifier.list_scheduled()
        self.assertFalse([k for k in live if k.startswith("rx|m1|08:00|")])
        self.assertIn("rx|m1|20:00|due", live)
        self.assertEqual(len(self.svc.todays_logs("m1")), 1)

        with self.assertRaises(DoseAlreadyTaken):
            self.svc.mark_dose_taken("m1", "08:00")

    def test_mark_dose_validation(self):
        self._save()
        with self.assertRaises(SlotNotScheduled):
            self.svc.mark_dose_taken("m1", "09:00")
        with self.assertRaises(MedicationNotFound):
            self.svc.mark_dose_taken("nope", "08:00")

    def test_remote_conflict_means_already_taken(self):
        self._save()
        self.remote.taken.add(("m1", "08:00", "2026-03-02"))
        with self.assertRaises(DoseAlreadyTaken):
            self.svc.mark_dose_taken("m1", "08:00")
        self.assertNotIn("rx|m1|08:00|post", self.notifier.list_scheduled())

    def test_offline_dose_is_replayed(self):
        self._save()
        self.remote.fail["mark_dose_taken"] = RemoteUnavailable("timeout")
        self.net.online = False
        res = self.svc.mark_dose_taken("m1", "08:00")
        self.assertTrue(res.offline)
        self.assertEqual(self.svc.get_medication("m1").quantity, 9)
        self.assertEqual(len(self.svc.queue.pending()), 1)

        del self.remote.fail["mark_dose_taken"]
        self.net.online = True
        self.assertEqual(self.svc.sync_now().processed, 1)
        self.assertIn(("m1", "08:00", "2026-03-02"), self.remote.taken)
        self.assertEqual(self.remote.rows["m1"]["quantity"], 9)

    def test_low_stock_after_dose(self):
        self._save(quantity=6)
        res = self.svc.mark_dose_taken("m1", "08:00")
        self.assertIsInstance(res.alert, LowStockAlert)
        self.assertTrue(self.svc.get_medication("m1").refill_alert_sent)

        self._save(quantity=30, refill_alert_sent=True)
        self.assertFalse(self.svc.get_medication("m1").refill_alert_sent)

    def test_refill_flag_reaches_server(self):
        self._save(quantity=6)
        self.svc.mark_dose_taken("m1", "08:00")
        self.assertTrue(self.remote.rows["m1"]["refill_alert_sent"])
        self.assertEqual(self.remote.calls.count(("upsert", "m1")), 2)

        # flagged once
        self.svc.check_stock()
        self.assertEqual(self.remote.calls.count(("upsert", "m1")), 2)

    def test_queued_dose_waits_for_pending_save(self):
        self.remote.fail["upsert_medication"] = RemoteUnavailable("HTTP 503")
        self._save()
        res = self.svc.mark_dose_taken("m1", "08:00")
        self.assertTrue(res.offline)
        self.assertEqual(self.remote.calls, [])

        self.remote.fail["mark_dose_taken"] = RemoteRejected("HTTP 404: Medicine not found", 404)
        self.svc.sync_now()
        kinds = [a.kind for a in self.svc.queue.pending()]
        self.assertEqual(kinds, [ActionKind.UPSERT_MEDICATION, ActionKind.MARK_DOSE_TAKEN])
        self.assertEqual(self.svc.queue.dead_letters(), [])

        self.remote.fail.clear()
        self.clock.advance(seconds=31)
        self.assertEqual(self.svc.sync_now().processed, 2)
        self.assertIn(("m1", "08:00", "2026-03-02"), self.remote.taken)
        self.assertEqual(self.remote.rows["m1"]["quantity"], 9)

    def test_reconcilers_do_not_share_a_lock(self):
        other = ReminderService(Settings(), MemoryStore(), LocalNotifier(self.clock), clock=self.clock)
        self.assertIs(self.svc.reconciler._lock, self.svc._schedule_lock)
        self.assertIsNot(other.reconciler._lock, self.svc.reconciler._lock)

    def test_delete_cascades(self):
        self._save()
        self.svc.delete_medication("m1")
        self.assertIsNone(self.svc.get_medication("m1"))
        self.assertFalse([k for k in self.notifier.list_scheduled() if "|m1|" in k])
        self.assertNotIn("m1", self.remote.rows)
        self.svc.reconcile()
        self.assertEqual(self.notifier.list_scheduled(), [])

    def test_offline_delete_is_replayed(self):
        self._save()
        self.remote.fail["delete_medication"] = RemoteUnavailable("timeout")
        self.net.online = False
        self.svc.delete_medication("m1")
        self.svc.refresh()
        self.assertEqual(self.svc.medications(), [])

        del self.remote.fail["delete_medication"]
        self.net.online = True
        self.svc.refresh()
        self.assertNotIn("m1", self.remote.rows)
        self.assertEqual(self.svc.medications(), [])

    def test_refresh_keeps_unsynced_edits(self):
        self.remote.fail["upsert_medication"] = RemoteUnavailable("timeout")
        self._save()
        self.svc.refresh()
        self.assertEqual([m.id for m in self.svc.medications()], ["m1"])
        self.assertIn("rx|m1|08:00|due", self.notifier.list_scheduled())

    def test_refresh_pulls_remote(self):
        self.remote.rows["r1"] = {"id": "r1", "name": "Metformin", "times": ["12:00"], "quantity": 40}
        self.svc.on_login("token", "u1")
        self.assertEqual([m.id for m in self.svc.medications()], ["r1"])
        self.assertIn("rx|r1|12:00|due", self.notifier.list_scheduled())
        self.assertIn(("session", "u1"), self.remote.calls)

    def test_delivered_event_marks_sent(self):
        self._save()
        self.clock.advance(minutes=55)
        self.svc.tick()
        self.assertTrue(self.svc.sent_state.has_fired_today("rx|m1|08:00|pre"))

    def test_late_delivery_counts_for_the_day_it_fired(self):
        self._save(times=["08:00"])
        fired_at = datetime(2026, 3, 2, 8, 0)
        self.clock.advance(days=1)
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "delivered.log"
            path.write_text(f"rx|m1|08:00|due\t{int(fired_at.timestamp() * 1000)}\n", encoding="utf-8")
            android = AndroidAlarmNotifier(self.svc.store, path, self.clock)
            android.subscribe(self.svc.handle_event)
            android.poll_events()

        self.assertTrue(self.svc.store.get("sent:2026-03-02:rx|m1|08:00|due"))
        self.assertFalse(self.svc.sent_state.has_fired_today("rx|m1|08:00|due"))
        self.svc.reconcile()
        self.assertIn("rx|m1|08:00|due", self.notifier.list_scheduled())

    def test_catch_up_delivery_is_dated_by_trigger(self):
        self._save(times=["23:59"])
        self.clock.advance(hours=16, minutes=58, seconds=50)
        self.svc.tick()
        self.clock.advance(minutes=1, seconds=20)
        self.svc.tick()
        self.assertEqual(self.clock.today().isoformat(), "2026-03-03")
        self.assertTrue(self.svc.store.get("sent:2026-03-02:rx|m1|23:59|due"))
        self.assertFalse(self.svc.sent_state.has_fired_today("rx|m1|23:59|due"))

    def test_foreign_event_ignored(self):
        self.svc.handle_event(NotificationEvent(EVENT_DELIVERED, "legacy-42"))
        self.assertEqual(self.svc.store.list_keys("sent:"), [])

    def test_cleanup_purges_old_state(self):
        self.svc.sent_state.mark_fired_today("rx|m1|08:00|due")
        self.clock.advance(days=1)
        self.svc.cleanup()
        self.assertEqual(self.svc.store.list_keys("sent:"), [])


# -------------------------
# Android glue (desktop-safe parts)
# -------------------------
class TestAndroidGlue(unittest.TestCase):
    def test_delivered_log_becomes_events(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "delivered.log"
            path.write_text("rx|m1|08:00|due\n\nrx|m1|08:00|post\n", encoding="utf-8")
            store = MemoryStore()
            notifier = AndroidAlarmNotifier(store, path, FakeClock(datetime(2026, 3, 2, 8, 6)))
            seen = []
            notifier.subscribe(seen.append)
            events = notifier.poll_events()
            self.assertEqual([e.identity for e in events], ["rx|m1|08:00|due", "rx|m1|08:00|post"])
            self.assertEqual(len(seen), 2)
            self.assertFalse(path.exists())
            self.assertEqual(notifier.poll_events(), [])

    def test_delivered_log_keeps_fire_time(self):
        fired_at = datetime(2026, 3, 1, 20, 0)
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "delivered.log"
            path.write_text(f"rx|m1|20:00|due\t{int(fired_at.timestamp() * 1000)}\nrx|m1|08:00|pre\tgarbage\n",
                            encoding="utf-8")
            notifier = AndroidAlarmNotifier(MemoryStore(), path, FakeClock(datetime(2026, 3, 2, 7, 0)))
            events = notifier.poll_events()
        self.assertEqual([e.identity for e in events], ["rx|m1|20:00|due", "rx|m1|08:00|pre"])
        self.assertEqual(events[0].at, fired_at)
        self.assertEqual(events[1].at, datetime(2026, 3, 2, 7, 0))

    def test_ledger_lists_scheduled(self):
        store = MemoryStore()
        store.set("alarm:rx|m1|08:00|due", {"at": "2026-03-02T08:00:00"})
        notifier = AndroidAlarmNotifier(store, Path("unused.log"))
        self.assertEqual(notifier.list_scheduled(), ["rx|m1|08:00|due"])

    def test_generated_sources(self):
        with tempfile.TemporaryDirectory() as td:
            root = write_android_sources(Path(td))
            java = (root / "org" / "example" / "medreminder" / "AlarmReceiver.java").read_text(encoding="utf-8")
            manifest = (root / "extra_manifest.xml").read_text(encoding="utf-8")
            self.assertIn("package org.example.medreminder;", java)
            self.assertIn('"medreminder_data"', java)
            self.assertIn("notification_id", java)
            self.assertIn('id + "\\t" + System.currentTimeMillis()', java)
            self.assertNotIn("{{", java)
            self.assertIn("org.example.medreminder.BootReceiver", manifest)


# -------------------------
# Config / logging
# -------------------------
class TestConfigAndLogging(unittest.TestCase):
    def test_env_settings(self):
        env = {"SUPABASE_URL": "https://demo.supabase.co/", "SUPABASE_ANON_KEY": "anon",
               "MEDREMINDER_QUEUE_MAX_ATTEMPTS": "7"}
        with tempfile.TemporaryDirectory() as td, mock.patch.dict(os.environ, env):
            s = Settings.from_env(base_dir=Path(td))
            self.assertEqual(s.supabase_url, "https://demo.supabase.co")
            self.assertEqual(s.queue_max_attempts, 7)
            self.assertTrue(s.remote_configured)
            self.assertEqual(s.store_path, Path(td) / "state.db.aes")

    def test_bad_env_value(self):
        with tempfile.TemporaryDirectory() as td, \
                mock.patch.dict(os.environ, {"MEDREMINDER_QUEUE_MAX_ATTEMPTS": "lots"}):
            with self.assertRaises(ConfigurationError):
                Settings.from_env(base_dir=Path(td))

    def test_log_file_and_ring(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "app.log"
            try:
                install_logging(path)
                install_logging(path)
                logger.info("ring check 4711")
                self.assertIn("ring check 4711", ring_text())
                self.assertIn("ring check 4711", path.read_text(encoding="utf-8"))
                handlers = [h for h in logger.handlers if type(h).__name__ == "_FileAndRingHandler"]
                self.assertEqual(len(handlers), 1)
            finally:
                install_logging(None)


if __name__ == "__main__":
    unittest.main(verbosity=2)
