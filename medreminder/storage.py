# medreminder/storage.py
import copy
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from .crypto import _CRYPTO_LOCK, aes_decrypt, aes_encrypt, atomic_write_bytes


class LocalClock:
    """Device wall-clock. Naive datetimes; the engine never deals in timezones."""

    def now(self) -> datetime:
        return datetime.now()

    def today(self) -> date:
        return self.now().date()


class KeyValueStore:
    """Durable JSON key/value store shared by every engine component.

    Components partition it by key prefix (``sent:``, ``cooldown:``, ``queue:``,
    ``cache:``, ``doselog:``, ``alarm:``, ``meta:``).
    """

    def __init__(self):
        self._lock = RLock()

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write ``key`` under the store lock; returns the new value."""
        with self._lock:
            new = fn(self.get(key, copy.deepcopy(default)))
            self.set(key, new)
            return new


class MemoryStore(KeyValueStore):
    def __init__(self):
        super().__init__()
        self._data: Dict[str, str] = {}

    def get(self, key, default=None):
        with self._lock:
            raw = self._data.get(key)
        return default if raw is None else json.loads(raw)

    def set(self, key, value):
        with self._lock:
            self._data[key] = json.dumps(value)

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix=""):
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class EncryptedStore(KeyValueStore):
    """SQLite key/value file, encrypted at rest as one AES-GCM blob."""

    def __init__(self, path: Path, key: bytes, tmp_dir: Optional[Path] = None):
        super().__init__()
        self.path = Path(path)
        self.key = key
        self.tmp_dir = Path(tmp_dir) if tmp_dir else self.path.parent / "tmp"
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_db()

    def _tmp_path(self, prefix: str) -> Path:
        return self.tmp_dir / f"{prefix}.{uuid.uuid4().hex}.db"

    def _ensure_db(self):
        with _CRYPTO_LOCK:
            if self.path.exists():
                return
            tmp = self._tmp_path("init")
            try:
                conn = sqlite3.connect(str(tmp))
                conn.execute("""
                    CREATE TABLE kv (
                        k TEXT PRIMARY KEY,
                        v TEXT NOT NULL
                    )
                """)
                conn.commit()
                conn.close()
                atomic_write_bytes(self.path, aes_encrypt(tmp.read_bytes(), self.key))
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _get_conn(self, write: bool):
        tmp = self._tmp_path("work")
        try:
            with _CRYPTO_LOCK:
                self._ensure_db()
                atomic_write_bytes(tmp, aes_decrypt(self.path.read_bytes(), self.key))

            conn = sqlite3.connect(str(tmp))
            try:
                yield conn
                conn.commit()
            finally:
                conn.close()

            if write:
                with _CRYPTO_LOCK:
                    atomic_write_bytes(self.path, aes_encrypt(tmp.read_bytes(), self.key))
        finally:
            tmp.unlink(missing_ok=True)

    def get(self, key, default=None):
        with self._lock, self._get_conn(write=False) as conn:
            row = conn.execute("SELECT v FROM kv WHERE k=?", (key,)).fetchone()
        return default if row is None else json.loads(row[0])

    def set(self, key, value):
        payload = json.dumps(value)
        with self._lock, self._get_conn(write=True) as conn:
            conn.execute("INSERT OR REPLACE INTO kv (k, v) VALUES (?, ?)", (key, payload))

    def delete(self, key):
        with self._lock, self._get_conn(write=True) as conn:
            conn.execute("DELETE FROM kv WHERE k=?", (key,))

    def list_keys(self, prefix=""):
        with self._lock, self._get_conn(write=False) as conn:
            rows = conn.execute(
                "SELECT k FROM kv WHERE substr(k, 1, ?) = ? ORDER BY k", (len(prefix), prefix)
            ).fetchall()
        return [r[0] for r in rows]
