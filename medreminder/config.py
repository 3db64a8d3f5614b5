# medreminder/config.py
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError

PACKAGE_DOMAIN = "org.example"
PACKAGE_NAME = "medreminder"
JAVA_PACKAGE = f"{PACKAGE_DOMAIN}.{PACKAGE_NAME}"
JAVA_ALARM_RECEIVER = f"{JAVA_PACKAGE}.AlarmReceiver"
JAVA_BOOT_RECEIVER = f"{JAVA_PACKAGE}.BootReceiver"

DATA_DIR_NAME = "medreminder_data"


def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def app_base_dir() -> Path:
    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / DATA_DIR_NAME
        if _is_writable_dir(d):
            return d

    home = os.environ.get("MEDREMINDER_HOME")
    if home:
        d = Path(home)
        if _is_writable_dir(d):
            return d

    d = Path(__file__).resolve().parent.parent / DATA_DIR_NAME
    d.mkdir(parents=True, exist_ok=True)
    return d


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    base_dir: Path = field(default_factory=lambda: Path(DATA_DIR_NAME))

    # remote store (Supabase)
    supabase_url: str = ""
    supabase_key: str = ""
    access_token: str = ""
    user_id: str = ""
    request_timeout_s: float = 15.0
    connectivity_timeout_s: float = 3.0

    # reminders
    pre_offset_min: int = 5
    post_offset_min: int = 5
    digest_time: str = "21:00"

    # stock
    default_refill_threshold: int = 5
    stock_cooldown_hours: int = 24

    # offline queue
    queue_max_attempts: int = 20
    queue_backoff_base_s: float = 30.0
    queue_backoff_max_s: float = 6 * 3600.0

    # background loop
    poll_interval_s: float = 30.0
    resync_interval_s: float = 15 * 60.0

    log_retention_days: int = 30

    @classmethod
    def from_env(cls, base_dir: Optional[Path] = None) -> "Settings":
        return cls(
            base_dir=base_dir or app_base_dir(),
            supabase_url=os.environ.get("SUPABASE_URL", "").rstrip("/"),
            supabase_key=os.environ.get("SUPABASE_ANON_KEY", ""),
            access_token=os.environ.get("MEDREMINDER_ACCESS_TOKEN", ""),
            user_id=os.environ.get("MEDREMINDER_USER_ID", ""),
            request_timeout_s=_env_float("MEDREMINDER_TIMEOUT", 15.0),
            digest_time=os.environ.get("MEDREMINDER_DIGEST_TIME", "21:00"),
            queue_max_attempts=_env_int("MEDREMINDER_QUEUE_MAX_ATTEMPTS", 20),
        )

    @property
    def store_path(self) -> Path:
        return self.base_dir / "state.db.aes"

    @property
    def key_path(self) -> Path:
        return self.base_dir / ".enc_key"

    @property
    def log_path(self) -> Path:
        return self.base_dir / "app.log"

    @property
    def tmp_dir(self) -> Path:
        return self.base_dir / "tmp"

    @property
    def delivered_path(self) -> Path:
        # appended to by the generated AlarmReceiver
        return self.base_dir / "delivered.log"

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def require_remote(self):
        if not self.supabase_url:
            raise ConfigurationError("SUPABASE_URL is not set.")
        if not self.supabase_key:
            raise ConfigurationError("SUPABASE_ANON_KEY is not set.")
