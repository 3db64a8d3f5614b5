# medreminder/remote.py
# Supabase (PostgREST + edge functions) client used by the sync path.
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings
from .errors import IdempotentConflict, RemoteRejected, RemoteUnavailable
from .logs import logger

MEDICINES = "/rest/v1/medicines"
MARK_TAKEN_FN = "/functions/v1/markTaken"
HEALTH = "/auth/v1/health"

UNIQUE_VIOLATION = "23505"
_RETRYABLE_STATUS = {401, 403, 408, 425, 429}


def _error_for(r: httpx.Response) -> Exception:
    code = None
    try:
        j = r.json()
        msg = j.get("message") or j.get("error") or j.get("msg") or str(j)
        code = j.get("code")
    except Exception:
        msg = r.text[:500]
    msg = f"HTTP {r.status_code}: {msg}"
    if r.status_code == 409 or code == UNIQUE_VIOLATION:
        return IdempotentConflict(msg, r.status_code, code)
    if r.status_code >= 500 or r.status_code in _RETRYABLE_STATUS:
        return RemoteUnavailable(msg)
    return RemoteRejected(msg, r.status_code, code)


class Connectivity:
    def is_connected(self) -> bool:
        raise NotImplementedError


class HttpConnectivityProbe(Connectivity):
    """One short request per drain attempt; any HTTP answer below 500 counts as online."""

    def __init__(self, url: str, timeout_s: float = 3.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout_s = float(timeout_s)
        self._client = client

    def is_connected(self) -> bool:
        try:
            if self._client is not None:
                r = self._client.get(self.url, timeout=self.timeout_s)
            else:
                r = httpx.get(self.url, timeout=self.timeout_s)
        except httpx.HTTPError as e:
            logger.info(f"offline: {type(e).__name__}")
            return False
        return r.status_code < 500


class SupabaseRemote:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        settings.require_remote()
        self.base_url = settings.supabase_url.rstrip("/")
        self.api_key = settings.supabase_key
        self.access_token = settings.access_token
        self.user_id = settings.user_id
        self._client = client or httpx.Client(timeout=settings.request_timeout_s)

    def set_session(self, access_token: str, user_id: str):
        self.access_token = access_token
        self.user_id = user_id

    def connectivity_probe(self, timeout_s: float = 3.0) -> HttpConnectivityProbe:
        return HttpConnectivityProbe(self.base_url + HEALTH, timeout_s, self._client)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        h = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            h["Prefer"] = prefer
        return h

    def _request(self, method: str, path: str, prefer: Optional[str] = None, **kwargs) -> httpx.Response:
        try:
            r = self._client.request(method, self.base_url + path, headers=self._headers(prefer), **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteUnavailable(f"timeout: {e}")
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"request error: {type(e).__name__}: {e}")
        if r.status_code >= 400:
            raise _error_for(r)
        return r

    def fetch_medications(self) -> List[Dict[str, Any]]:
        params = {"select": "*", "order": "created_at.desc"}
        if self.user_id:
            params["user_id"] = f"eq.{self.user_id}"
        rows = self._request("GET", MEDICINES, params=params).json()
        # de-duplicate by id, last row wins
        return list({row["id"]: row for row in rows if row.get("id")}.values())

    def upsert_medication(self, record: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(record)
        if self.user_id and not body.get("user_id"):
            body["user_id"] = self.user_id
        r = self._request(
            "POST", MEDICINES,
            prefer="resolution=merge-duplicates,return=representation",
            params={"on_conflict": "id"},
            json=body,
        )
        try:
            rows = r.json()
        except ValueError:
            return body
        return rows[0] if isinstance(rows, list) and rows else body

    def delete_medication(self, medicine_id: str):
        self._request("DELETE", MEDICINES, params={"id": f"eq.{medicine_id}"})

    def mark_dose_taken(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Server decrements stock and logs the dose; a repeat for the same slot/day answers 409."""
        r = self._request("POST", MARK_TAKEN_FN, json={
            "medicineId": payload["medicine_id"],
            "quantity": payload.get("quantity", 1),
            "scheduledTime": payload.get("scheduled_time"),
            "scheduledAt": payload.get("scheduled_at"),
            "slotDate": payload.get("slot_date"),
            "takenAt": payload.get("taken_at"),
            "note": payload.get("note"),
        })
        try:
            return r.json()
        except ValueError:
            return {}

    def close(self):
        self._client.close()


class NeverConnected(Connectivity):
    """Stand-in probe when no remote store is configured."""

    def is_connected(self) -> bool:
        return False
