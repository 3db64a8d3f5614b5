# main.py
# Medicine Reminder (KivyMD) host: reminder reconciliation + offline sync status shell.
#
# - Run the app:              python main.py
# - Generate Android Java + manifest injection files for Buildozer:
#                             python main.py --gen-android
# - Headless passes:          python main.py --reconcile | --sync | --status
#
# Buildozer notes (in buildozer.spec):
#   requirements = python3,kivy,kivymd,pyjnius,cryptography,httpx
#   android.api = 34
#   android.minapi = 24
#   android.permissions = POST_NOTIFICATIONS,SCHEDULE_EXACT_ALARM,RECEIVE_BOOT_COMPLETED,WAKE_LOCK,VIBRATE,INTERNET
#   android.add_src = android_src
#   android.extra_manifest_xml = android_src/extra_manifest.xml
#   services = Reminders:service/med_service.py
#
# IMPORTANT:
# - Set PACKAGE_DOMAIN / PACKAGE_NAME in medreminder/config.py to match your
#   buildozer.spec (package.domain / package.name).

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from medreminder.android_gen import write_android_sources
from medreminder.bootstrap import build_service
from medreminder.config import Settings
from medreminder.logs import clear_log, logger, ring_text


def _run_app():
    from kivy.clock import Clock
    from kivy.core.window import Window
    from kivy.graphics import Color, Line, RoundedRectangle
    from kivy.lang import Builder
    from kivy.metrics import dp
    from kivy.properties import NumericProperty
    from kivy.uix.widget import Widget
    from kivy.utils import platform as _kivy_platform
    from kivymd.app import MDApp

    from medreminder.android import (
        can_schedule_exact_alarms,
        ensure_android_notification_permission,
        interaction_from_intent,
    )
    from medreminder.crypto import android_ready
    from medreminder.notify import EVENT_INTERACTED, NotificationEvent
    from medreminder.service import ReminderService

    if _kivy_platform != "android" and hasattr(Window, "size"):
        Window.size = (420, 760)

    class GlassCard(Widget):
        radius = NumericProperty(dp(22))

        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.bind(pos=self._redraw, size=self._redraw)

        def _redraw(self, *_):
            self.canvas.clear()
            x, y = self.pos
            w, h = self.size
            r = float(self.radius)
            with self.canvas:
                Color(1, 1, 1, 0.06)
                RoundedRectangle(pos=(x, y), size=(w, h), radius=[r])
                Color(1, 1, 1, 0.12)
                Line(rounded_rectangle=[x, y, w, h, r], width=dp(1.2))

    KV = """
MDScreen:
    MDBoxLayout:
        orientation: "vertical"

        MDTopAppBar:
            title: "Medicine Reminder"
            elevation: 10
            right_action_items: [["refresh", lambda x: app.refresh()]]

        MDBoxLayout:
            orientation: "vertical"
            padding: "12dp"
            spacing: "10dp"

            FloatLayout:
                size_hint_y: None
                height: "112dp"
                GlassCard:
                    pos: self.parent.pos
                    size: self.parent.size
                MDBoxLayout:
                    orientation: "vertical"
                    padding: "14dp"
                    pos: self.parent.pos
                    size: self.parent.size
                    MDLabel:
                        text: "Reminders & Sync"
                        bold: True
                        font_style: "H6"
                    MDLabel:
                        id: sync_status
                        text: "-"
                        theme_text_color: "Secondary"
                    MDLabel:
                        id: alarm_status
                        text: "-"
                        theme_text_color: "Secondary"

            MDLabel:
                text: "Debug log"
                bold: True
                size_hint_y: None
                height: "28dp"

            ScrollView:
                MDLabel:
                    id: debug_log
                    text: ""
                    size_hint_y: None
                    height: self.texture_size[1]

            MDBoxLayout:
                spacing: "10dp"
                size_hint_y: None
                height: "48dp"
                MDRaisedButton:
                    text: "Sync now"
                    on_release: app.sync_now()
                MDRaisedButton:
                    text: "Resync reminders"
                    on_release: app.resync()
                MDRaisedButton:
                    text: "Clear Log"
                    on_release: app.clear_log()
"""

    class MedicineReminderApp(MDApp):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.service: Optional[ReminderService] = None

        def build(self):
            self.title = "Medicine Reminder"
            self.theme_cls.theme_style = "Dark"
            self.theme_cls.primary_palette = "Blue"
            return Builder.load_string(KV)

        def on_start(self):
            logger.info(f"app start platform={_kivy_platform}")
            ensure_android_notification_permission()

            self.service = build_service()
            self.service.start()
            self._consume_launch_intent()

            Clock.schedule_once(lambda *_: self.refresh(), 0.4)
            Clock.schedule_interval(lambda *_: self.refresh_status(), 20)

        def on_resume(self):
            self._consume_launch_intent()
            self.refresh()

        def on_stop(self):
            if self.service:
                self.service.stop()

        def _consume_launch_intent(self):
            ident = interaction_from_intent()
            if ident and self.service:
                self.service.handle_event(NotificationEvent(EVENT_INTERACTED, ident))

        # -------------------------
        # Actions
        # -------------------------
        def refresh(self):
            if not self.service:
                return
            try:
                self.service.refresh()
            except Exception:
                logger.exception("refresh failed")
            self.refresh_status()

        def sync_now(self):
            if not self.service:
                return
            try:
                res = self.service.sync_now()
                logger.info(f"sync: processed={res.processed} remaining={len(res.remaining)} skipped={res.skipped}")
            except Exception:
                logger.exception("sync failed")
            self.refresh_status()

        def resync(self):
            if not self.service:
                return
            try:
                report = self.service.reconcile()
                logger.info(f"resync: +{len(report.scheduled)} -{len(report.cancelled)} failed={len(report.failed)}")
            except Exception:
                logger.exception("resync failed")
            self.refresh_status()

        def refresh_status(self):
            try:
                self.root.ids.debug_log.text = ring_text()
                if not self.service:
                    return
                st = self.service.status()
                self.root.ids.sync_status.text = (
                    f"{st['medicines']} medicines  •  {st['queued_actions']} queued  •  "
                    f"{st['dead_letters']} failed"
                )
                if android_ready():
                    exact = can_schedule_exact_alarms()
                    mode = "Exact" if exact else "Fallback"
                else:
                    mode = "Desktop (simulated)"
                self.root.ids.alarm_status.text = f"Alarms: {mode}  •  {st['live_notifications']} live"
            except Exception:
                logger.exception("refresh_status failed")

        def clear_log(self):
            clear_log(self.service.settings.log_path if self.service else None)
            self.root.ids.debug_log.text = ""
            logger.info("log cleared")

    MedicineReminderApp().run()


# -------------------------
# Entrypoint
# -------------------------
def main(argv=None):
    p = argparse.ArgumentParser(description="Medicine reminder reconciliation + offline sync")
    p.add_argument("--gen-android", action="store_true", help="Write Java receivers and manifest snippet.")
    p.add_argument("--reconcile", action="store_true", help="Run one reconciliation + stock pass and exit.")
    p.add_argument("--sync", action="store_true", help="Drain the offline queue, refresh and exit.")
    p.add_argument("--status", action="store_true", help="Print engine status as JSON and exit.")
    args = p.parse_args(argv)

    if args.gen_android:
        src_root = write_android_sources(Path.cwd())
        print(f"[gen] Wrote android sources to: {src_root}")
        print("[gen] In buildozer.spec set:")
        print("      android.add_src = android_src")
        print("      android.extra_manifest_xml = android_src/extra_manifest.xml")
        return 0

    if args.reconcile or args.sync or args.status:
        service = build_service(Settings.from_env(), require_remote=args.sync)
        if args.sync:
            res = service.sync_now()
            print(f"queue: processed={res.processed} remaining={len(res.remaining)} "
                  f"dead={len(res.dead_lettered)} skipped={res.skipped}")
            service.refresh()
        if args.reconcile:
            report = service.reconcile()
            service.check_stock()
            print(f"reconcile: scheduled={len(report.scheduled)} cancelled={len(report.cancelled)} "
                  f"failed={len(report.failed)}")
        if args.status:
            print(json.dumps(service.status(), indent=2))
        return 0

    _run_app()
    return 0


if __name__ == "__main__":
    sys.exit(main())
