# medreminder/schedule.py
# Enumerates the notifications a medication schedule theoretically wants.
# No lateness or delivery filtering happens here; see reconcile.py.
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .config import Settings
from .identity import Kind, NotificationIdentity, digest_identity
from .models import Medication
from .notify import CHANNEL_REMINDERS, DailyTrigger, NotificationContent

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class PlannedNotification:
    identity: NotificationIdentity
    content: NotificationContent
    trigger: DailyTrigger

    @property
    def key(self) -> str:
        return self.identity.serialize()


def shift_time(hhmm: str, minutes: int) -> str:
    h, m = map(int, hhmm.split(":"))
    total = (h * 60 + m + int(minutes)) % MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def format_time_12h(hhmm: str) -> str:
    try:
        h, m = map(int, hhmm.split(":"))
    except ValueError:
        return hhmm
    period = "PM" if h >= 12 else "AM"
    return f"{h % 12 or 12}:{m:02d} {period}"


def _entry(med: Medication, time: str, kind: Kind, at: str, title: str, body: str) -> PlannedNotification:
    ident = NotificationIdentity.of(med.id, time, kind)
    content = NotificationContent(
        title=title,
        body=body,
        channel=CHANNEL_REMINDERS,
        data={"type": f"{kind.value}-reminder", "medicine_id": med.id, "slot": time},
    )
    return PlannedNotification(ident, content, DailyTrigger.at(at))


def plan_medication(med: Medication, settings: Optional[Settings] = None) -> List[PlannedNotification]:
    settings = settings or Settings()
    planned = []
    for time in med.times:
        shown = format_time_12h(time)
        name = med.name or "your medicine"
        planned.append(_entry(
            med, time, Kind.PRE, shift_time(time, -settings.pre_offset_min),
            "⏳ Upcoming Dose",
            f"Take {name} in {settings.pre_offset_min} minutes ({shown})",
        ))
        planned.append(_entry(
            med, time, Kind.DUE, time,
            "💊 Time to Take Medicine",
            f"It's {shown}. Please take {name} now.",
        ))
        planned.append(_entry(
            med, time, Kind.POST, shift_time(time, settings.post_offset_min),
            "⚠️ Missed Dose?",
            f"Did you take {name} at {shown}? Mark it as taken if you did.",
        ))
    return planned


def plan_digest(meds: Iterable[Medication], settings: Optional[Settings] = None) -> Optional[PlannedNotification]:
    """One 21:00 digest per user, only if some dose is due before it."""
    settings = settings or Settings()
    at = settings.digest_time
    names = []
    for med in meds:
        if any(t < at for t in med.times):
            names.append(med.name or med.id)
    if not names:
        return None
    if len(names) == 1:
        body = f"You might have missed {names[0]} today. Please check your logs."
    else:
        body = f"You have {len(names)} medicines scheduled today. Please check your logs for missed doses."
    content = NotificationContent(
        title="🌙 Daily Summary",
        body=body,
        channel=CHANNEL_REMINDERS,
        data={"type": "summary-reminder"},
    )
    return PlannedNotification(digest_identity(at), content, DailyTrigger.at(at))
