# medreminder/models.py
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .identity import normalize_time


class DoseStatus(str, Enum):
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


def _int_or(value, default: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return default
    return int(value)


@dataclass
class Medication:
    id: str
    name: str = ""
    times: List[str] = field(default_factory=list)
    quantity: int = 0
    unit_per_dose: int = 1
    refill_threshold: Optional[int] = None
    refill_alert_sent: bool = False
    dosage: str = ""
    user_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    # columns of the remote ``medicines`` row that this engine reads
    _KNOWN = ("id", "name", "times", "quantity", "unit_per_dose", "refill_threshold",
              "refill_alert_sent", "dosage", "user_id")

    def __post_init__(self):
        self.id = str(self.id)
        seen = []
        for t in self.times or []:
            t = normalize_time(t)
            if t not in seen:
                seen.append(t)
        self.times = sorted(seen)
        self.quantity = max(0, int(self.quantity or 0))
        self.unit_per_dose = max(1, int(self.unit_per_dose or 1))

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Medication":
        if not record.get("id"):
            raise ValueError("medication record has no id")
        extra = {k: v for k, v in record.items() if k not in cls._KNOWN}
        return cls(
            id=record["id"],
            name=record.get("name") or "",
            times=list(record.get("times") or []),
            quantity=_int_or(record.get("quantity"), 0),
            unit_per_dose=_int_or(record.get("unit_per_dose"), 1),
            refill_threshold=_int_or(record.get("refill_threshold"), None),
            refill_alert_sent=bool(record.get("refill_alert_sent") or False),
            dosage=record.get("dosage") or "",
            user_id=record.get("user_id") or "",
            extra=extra,
        )

    def to_record(self) -> Dict[str, Any]:
        rec = dict(self.extra)
        rec.update({
            "id": self.id,
            "name": self.name,
            "times": list(self.times),
            "quantity": self.quantity,
            "unit_per_dose": self.unit_per_dose,
            "refill_threshold": self.refill_threshold,
            "refill_alert_sent": self.refill_alert_sent,
            "dosage": self.dosage,
        })
        if self.user_id:
            rec["user_id"] = self.user_id
        return rec


@dataclass
class DoseLogEntry:
    medicine_id: str
    slot: str            # "HH:MM", or a full ISO instant once the remote reported one
    slot_date: str       # YYYY-MM-DD, local
    taken_at: str        # ISO local
    status: DoseStatus = DoseStatus.TAKEN
    note: Optional[str] = None
    offline: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DoseLogEntry":
        return cls(
            medicine_id=d["medicine_id"],
            slot=d["slot"],
            slot_date=d["slot_date"],
            taken_at=d["taken_at"],
            status=DoseStatus(d.get("status", "taken")),
            note=d.get("note"),
            offline=bool(d.get("offline", False)),
        )

    @property
    def slot_time(self) -> str:
        if "T" in self.slot:
            return self.slot.split("T", 1)[1][:5]
        return self.slot
