from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import requests

POLL_INTERVAL_SECONDS = 2.0
PUSH_DEBOUNCE_SECONDS = 0.3
SELF_WRITE_GRACE_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 10

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value[:-1] if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class QueueSyncClient:
    """Poll/push client for the live queue.

    Every viewer polls ``GET /api/queue/status`` on a fixed interval. The
    runner also pushes its local state, debounced, to ``POST
    /api/queue/status``. For ``grace_window`` seconds after each local write
    the client ignores polled state that is not newer than that write, so
    an in-flight echo cannot roll back the optimistic local state.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        user_id: Optional[str] = None,
        http: Any | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        debounce: float = PUSH_DEBOUNCE_SECONDS,
        grace_window: float = SELF_WRITE_GRACE_SECONDS,
        on_state: Callable[[dict[str, Any]], None] | None = None,
        on_ownership_lost: Callable[[], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user_id = user_id
        self.poll_interval = poll_interval
        self.debounce = debounce
        self.grace_window = timedelta(seconds=grace_window)
        self.on_state = on_state
        self.on_ownership_lost = on_ownership_lost
        self._http = http or requests.Session()
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[dict[str, Any]] = None
        self.last_local_write: Optional[datetime] = None
        self.state: dict[str, Any] = {"isRunning": False, "currentQueueIndex": 0, "doctors": [], "currentDoctor": None}
        self.is_runner = False

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # -- reads -----------------------------------------------------------

    def should_apply(self, remote: dict[str, Any]) -> bool:
        if self.last_local_write is None:
            return True
        if self._clock() - self.last_local_write >= self.grace_window:
            return True
        remote_updated = parse_timestamp(remote.get("lastUpdated"))
        return remote_updated is not None and remote_updated > self.last_local_write

    def fetch_state(self) -> dict[str, Any]:
        response = self._http.get(
            self._url("/api/queue/status"),
            headers=self._headers,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return response.json()

    def poll_once(self) -> bool:
        """Fetches state once; returns whether it replaced the local copy."""
        remote = self.fetch_state()
        with self._lock:
            if not self.should_apply(remote):
                logger.debug("Skipping polled state inside self-write grace window")
                return False
            self.state = remote
            runner_id = remote.get("runnerId")
            self.is_runner = bool(remote.get("isRunning") and self.user_id and runner_id == self.user_id)
        if self.on_state:
            self.on_state(remote)
        return True

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.poll_once()
            except requests.RequestException as exc:
                logger.warning("Queue poll failed: %s", exc)
            stop_event.wait(self.poll_interval)

    # -- writes ----------------------------------------------------------

    @staticmethod
    def _status_payload(state: dict[str, Any]) -> dict[str, Any]:
        return {
            "isRunning": True,
            "currentQueueIndex": state.get("currentQueueIndex", 0),
            "doctors": state.get("doctors") or [],
            "startTime": state.get("startTime"),
            "runnerName": state.get("runnerName"),
        }

    def push(self, payload: Optional[dict[str, Any]] = None) -> None:
        """Schedules a status write; writes within ``debounce`` coalesce into the last one."""
        with self._lock:
            self._pending = payload if payload is not None else self._status_payload(self.state)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> Optional[dict[str, Any]]:
        with self._lock:
            payload, self._pending = self._pending, None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if payload is None:
            return None
        return self._post("/api/queue/status", payload)

    def _post(self, path: str, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        self.last_local_write = self._clock()
        response = self._http.post(
            self._url(path),
            json=payload,
            headers=self._headers,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        if response.status_code == 403:
            logger.info("Queue write rejected; this client no longer owns the queue")
            self.is_runner = False
            if self.on_ownership_lost:
                self.on_ownership_lost()
            return None
        response.raise_for_status()
        return response.json()

    # -- runner actions --------------------------------------------------

    def start(self, doctors: list[dict[str, Any]], runner_name: str) -> Optional[dict[str, Any]]:
        result = self._post("/api/queue/start", {"doctors": doctors, "runnerName": runner_name})
        if result:
            with self._lock:
                self.state = result.get("queueStatus", self.state)
                self.is_runner = True
        return result

    def stop(self, status: str = "stopped") -> Optional[dict[str, Any]]:
        with self._lock:
            self._pending = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        result = self._post("/api/queue/stop", {"status": status})
        if result:
            with self._lock:
                self.state = {"isRunning": False, "currentQueueIndex": 0, "doctors": [], "currentDoctor": None}
                self.is_runner = False
        return result

    def _move(self, step: int) -> bool:
        # read-modify-write of the state must not interleave with a poll
        with self._lock:
            doctors = self.state.get("doctors") or []
            if not self.state.get("isRunning") or not doctors:
                return False
            index = self.state.get("currentQueueIndex") or 0
            if not 0 <= index < len(doctors):
                index = 0
            index = (index + step) % len(doctors)
            self.state = dict(self.state, currentQueueIndex=index, currentDoctor=doctors[index])
            payload = self._status_payload(self.state)
        self.push(payload)
        return True

    def next(self) -> bool:
        return self._move(1)

    def previous(self) -> bool:
        return self._move(-1)

    def close(self) -> None:
        self.flush()
