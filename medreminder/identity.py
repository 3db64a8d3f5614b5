# medreminder/identity.py
"""Deterministic notification identities.

An identity names the purpose of a notification (which medicine, which time of
day, which kind) rather than a handle returned by the OS, so the same value is
used to schedule, look up and cancel it.
"""
import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

ID_PREFIX = "rx"
SEP = "|"
DIGEST_SCOPE = "*"


class Kind(str, Enum):
    PRE = "pre"
    DUE = "due"
    POST = "post"
    SUMMARY = "summary"


def normalize_time(value: str) -> str:
    """'8:5' -> ValueError, '8:05' -> '08:05', '08:05:00' -> '08:05'."""
    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3) or len(parts[1]) != 2:
        raise ValueError(f"invalid time of day: {value!r}")
    try:
        h, m = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"invalid time of day: {value!r}")
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"time of day out of range: {value!r}")
    return f"{h:02d}:{m:02d}"


@dataclass(frozen=True, order=True)
class NotificationIdentity:
    medicine_id: str
    time: str
    kind: Kind

    @classmethod
    def of(cls, medicine_id: str, time: str, kind) -> "NotificationIdentity":
        medicine_id = str(medicine_id)
        if not medicine_id or SEP in medicine_id:
            raise ValueError(f"invalid medicine id: {medicine_id!r}")
        return cls(medicine_id, normalize_time(time), Kind(kind))

    def serialize(self) -> str:
        return SEP.join((ID_PREFIX, self.medicine_id, self.time, self.kind.value))

    def __str__(self):
        return self.serialize()

    @property
    def is_digest(self) -> bool:
        return self.medicine_id == DIGEST_SCOPE


def identity(medicine_id: str, time: str, kind) -> str:
    return NotificationIdentity.of(medicine_id, time, kind).serialize()


def parse_identity(raw: str) -> Optional[NotificationIdentity]:
    """Inverse of ``identity``. Foreign or malformed ids yield None."""
    if not isinstance(raw, str):
        return None
    parts = raw.split(SEP)
    if len(parts) != 4 or parts[0] != ID_PREFIX:
        return None
    try:
        ident = NotificationIdentity.of(parts[1], parts[2], parts[3])
    except ValueError:
        return None
    # reject non-canonical spellings so the mapping stays one-to-one
    return ident if ident.serialize() == raw else None


def slot_identities(medicine_id: str, time: str):
    return [NotificationIdentity.of(medicine_id, time, k) for k in (Kind.PRE, Kind.DUE, Kind.POST)]


def digest_identity(time: str) -> NotificationIdentity:
    return NotificationIdentity.of(DIGEST_SCOPE, time, Kind.SUMMARY)


def request_code(ident) -> int:
    # Stable per identity, usable as an Android PendingIntent request code
    raw = ident.serialize() if isinstance(ident, NotificationIdentity) else str(ident)
    h = hashlib.sha256(raw.encode("utf-8")).digest()
    return int.from_bytes(h[:4], "big") & 0x7FFFFFFF
