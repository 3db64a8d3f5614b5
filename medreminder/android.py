# medreminder/android.py
# AlarmManager / NotificationManager bridge (pyjnius). Only usable inside the
# packaged Android app; everything else uses notify.LocalNotifier.
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .config import JAVA_ALARM_RECEIVER
from .crypto import android_ready
from .identity import request_code
from .logs import logger
from .notify import (
    CHANNEL_LOW_STOCK,
    CHANNEL_OUT_OF_STOCK,
    CHANNEL_REMINDERS,
    CHANNELS,
    EVENT_DELIVERED,
    NotificationEvent,
    Notifier,
)
from .storage import KeyValueStore, LocalClock

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

ALARM_PREFIX = "alarm:"
BOOT_KEY = "meta:boot_epoch"
EXTRA_ID = "notification_id"

_IMPORTANCE = {
    CHANNEL_REMINDERS: "IMPORTANCE_HIGH",
    CHANNEL_LOW_STOCK: "IMPORTANCE_DEFAULT",
    CHANNEL_OUT_OF_STOCK: "IMPORTANCE_MAX",
}


def _context():
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        if activity is not None:
            return activity.getApplicationContext()
    except Exception:
        pass
    PythonService = autoclass("org.kivy.android.PythonService")
    return PythonService.mService.getApplicationContext()


def android_sdk_int() -> int:
    if not android_ready():
        return 0
    try:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        return int(BuildVERSION.SDK_INT)
    except Exception:
        return 0


def ensure_android_notification_permission():
    """
    Android 13+ needs POST_NOTIFICATIONS runtime permission.
    If the request fails (OEM quirks), we log and continue.
    """
    if not android_ready() or android_sdk_int() < 33:
        return
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        activity = PythonActivity.mActivity
        ContextCompat = autoclass("androidx.core.content.ContextCompat")
        ActivityCompat = autoclass("androidx.core.app.ActivityCompat")
        PackageManager = autoclass("android.content.pm.PackageManager")
        Manifest = autoclass("android.Manifest")

        perm = Manifest.permission.POST_NOTIFICATIONS
        granted = ContextCompat.checkSelfPermission(activity, perm) == PackageManager.PERMISSION_GRANTED
        if not granted:
            ActivityCompat.requestPermissions(activity, [perm], 2407)
            logger.info("requested POST_NOTIFICATIONS permission")
    except Exception:
        logger.exception("POST_NOTIFICATIONS request failed")


def can_schedule_exact_alarms() -> bool:
    if not android_ready():
        return False
    if android_sdk_int() < 31:
        return True
    try:
        Context = autoclass("android.content.Context")
        AlarmManager = autoclass("android.app.AlarmManager")
        am = cast(AlarmManager, _context().getSystemService(Context.ALARM_SERVICE))
        return bool(am.canScheduleExactAlarms())
    except Exception:
        logger.exception("canScheduleExactAlarms check failed")
        return False


def interaction_from_intent() -> Optional[str]:
    """Identity carried by the notification the user tapped to open the app, if any."""
    if not android_ready():
        return None
    try:
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        intent = PythonActivity.mActivity.getIntent()
        if intent is None:
            return None
        raw = intent.getStringExtra(EXTRA_ID)
        if raw:
            intent.removeExtra(EXTRA_ID)
        return str(raw) if raw else None
    except Exception:
        logger.exception("reading launch intent failed")
        return None


class AndroidAlarmNotifier(Notifier):
    """Exact one-shot alarms at each entry's next occurrence.

    AlarmManager cannot list what it holds, so live identities are kept in a
    ledger under ``alarm:`` in the store. The ledger is dropped when the boot
    time changes, since a reboot clears every alarm.
    """

    def __init__(self, store: KeyValueStore, delivered_path: Path, clock: Optional[LocalClock] = None):
        super().__init__()
        self.store = store
        self.delivered_path = Path(delivered_path)
        self.clock = clock or LocalClock()
        if android_ready():
            self._check_boot()

    def _check_boot(self):
        try:
            SystemClock = autoclass("android.os.SystemClock")
            boot_epoch = time.time() - SystemClock.elapsedRealtime() / 1000.0
        except Exception:
            logger.exception("boot time lookup failed")
            return
        known = self.store.get(BOOT_KEY)
        if known is None or abs(float(known) - boot_epoch) > 120:
            stale = self.store.list_keys(ALARM_PREFIX)
            for key in stale:
                self.store.delete(key)
            if stale:
                logger.info(f"device rebooted; dropped {len(stale)} alarm ledger entries")
            self.store.set(BOOT_KEY, boot_epoch)

    def _pending_intent(self, identity: str, content=None):
        app_ctx = _context()
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")
        Build = autoclass("android.os.Build")

        intent = Intent()
        intent.setClassName(app_ctx, JAVA_ALARM_RECEIVER)
        intent.putExtra(EXTRA_ID, identity)
        if content is not None:
            intent.putExtra("title", content.title)
            intent.putExtra("body", content.body)
            intent.putExtra("channel", content.channel)

        flags = PendingIntent.FLAG_UPDATE_CURRENT
        if int(Build.VERSION.SDK_INT) >= 23:
            flags |= PendingIntent.FLAG_IMMUTABLE
        return app_ctx, PendingIntent.getBroadcast(app_ctx, request_code(identity), intent, int(flags))

    def _alarm_manager(self, app_ctx):
        AlarmManager = autoclass("android.app.AlarmManager")
        Context = autoclass("android.content.Context")
        return cast(AlarmManager, app_ctx.getSystemService(Context.ALARM_SERVICE))

    def schedule(self, identity, content, trigger):
        if not android_ready():
            return False, "android runtime not available"
        try:
            at = trigger.next_after(self.clock.now())
            app_ctx, pi = self._pending_intent(identity, content)
            am = self._alarm_manager(app_ctx)
            AlarmManager = autoclass("android.app.AlarmManager")
            trigger_ms = int(at.timestamp() * 1000)

            # Doze-friendly scheduling
            if android_sdk_int() >= 23:
                if can_schedule_exact_alarms():
                    am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                else:
                    # not guaranteed exact on some devices/versions
                    am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
            else:
                am.setExact(AlarmManager.RTC_WAKEUP, trigger_ms, pi)

            self.store.set(ALARM_PREFIX + identity, {"at": at.isoformat(), "channel": content.channel})
            logger.info(f"alarm rc={request_code(identity)} {identity} @ {at}")
            return True, None
        except Exception as e:
            logger.exception("alarm scheduling failed")
            return False, f"{type(e).__name__}: {e}"

    def cancel(self, identity):
        if not android_ready():
            return False, "android runtime not available"
        try:
            app_ctx, pi = self._pending_intent(identity)
            self._alarm_manager(app_ctx).cancel(pi)
            pi.cancel()
            self.store.delete(ALARM_PREFIX + identity)
            return True, None
        except Exception as e:
            logger.exception(f"alarm cancel failed for {identity}")
            return False, f"{type(e).__name__}: {e}"

    def list_scheduled(self) -> List[str]:
        return [k[len(ALARM_PREFIX):] for k in self.store.list_keys(ALARM_PREFIX)]

    def present(self, content):
        if not android_ready():
            return False, "android runtime not available"
        try:
            app_ctx = _context()
            Context = autoclass("android.content.Context")
            NotificationManager = autoclass("android.app.NotificationManager")
            NotificationChannel = autoclass("android.app.NotificationChannel")
            Notification = autoclass("android.app.Notification")

            nm = app_ctx.getSystemService(Context.NOTIFICATION_SERVICE)
            if android_sdk_int() >= 26:
                name, description = CHANNELS.get(content.channel, (content.channel, ""))
                importance = getattr(NotificationManager, _IMPORTANCE.get(content.channel, "IMPORTANCE_DEFAULT"))
                ch = NotificationChannel(content.channel, name, importance)
                ch.setDescription(description)
                nm.createNotificationChannel(ch)
                builder = Notification.Builder(app_ctx, content.channel)
            else:
                builder = Notification.Builder(app_ctx)

            builder.setContentTitle(content.title)
            builder.setContentText(content.body)
            builder.setSmallIcon(app_ctx.getApplicationInfo().icon)
            builder.setAutoCancel(True)

            nid = int(time.time() * 1000) & 0x7FFFFFFF
            nm.notify(nid, builder.build())
            return True, None
        except Exception as e:
            logger.exception("notification post failed")
            return False, f"{type(e).__name__}: {e}"

    def poll_events(self) -> List[NotificationEvent]:
        """Consume the ids the AlarmReceiver appended since the last poll."""
        if not self.delivered_path.exists():
            return []
        work = self.delivered_path.with_suffix(f".{int(time.time() * 1000)}.work")
        try:
            self.delivered_path.replace(work)
            lines = work.read_text(encoding="utf-8").splitlines()
        except OSError:
            logger.exception("reading delivered alarms failed")
            return []
        finally:
            work.unlink(missing_ok=True)

        now = self.clock.now()
        events = []
        for line in lines:
            ident, _, millis = line.strip().partition("\t")
            if not ident:
                continue
            at = now
            if millis:
                try:
                    at = datetime.fromtimestamp(int(millis) / 1000)
                except (ValueError, OverflowError, OSError):
                    logger.warning(f"bad delivery time for {ident}: {millis!r}")
            events.append(NotificationEvent(EVENT_DELIVERED, ident, at))
        for ev in events:
            self.emit(ev)
        return events
