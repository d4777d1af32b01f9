from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

import requests

from doctor_ranks import format_doctor, rank_label

QUEUE_WEBHOOK_URL = os.getenv("QUEUE_WEBHOOK_URL")
QUEUE_WEBHOOK_TIMEOUT = float(os.getenv("QUEUE_WEBHOOK_TIMEOUT", "5"))

COLOR_START = 0x2ECC71
COLOR_STOP = 0xE74C3C
COLOR_RUNNING = 0x3498DB
COLOR_UPDATE = 0xF39C12

NOTIFICATION_TYPES = ("start", "stop", "next", "previous", "update")
UNKNOWN_RUNNER = "Unknown"

logger = logging.getLogger(__name__)


def format_duration(milliseconds: int | float | None) -> str:
    total_seconds = int((milliseconds or 0) // 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def _roster_lines(doctors: list[dict[str, Any]]) -> str:
    return "\n".join(f"{index}. {format_doctor(doctor)}" for index, doctor in enumerate(doctors, start=1))


def build_message(event_type: str, data: dict[str, Any], now: Optional[datetime] = None) -> tuple[str, str, int]:
    """Returns ``(title, description, colour)`` for a queue event.

    Raises ValueError for an unknown event type.
    """
    timestamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    runner = data.get("runnerName") or UNKNOWN_RUNNER
    doctors = data.get("doctors") or []
    if event_type == "start":
        lines = [
            f"**Runner:** {runner}",
            f"**Doctors:** {data.get('doctorCount', len(doctors))}",
            f"**Roster:**\n{_roster_lines(doctors)}",
            f"**Started at:** {timestamp}",
        ]
        return "Queue started", "\n".join(lines), COLOR_START
    if event_type == "stop":
        lines = [
            f"**Runner:** {runner}",
            f"**Total time:** {data.get('totalTime') or format_duration(data.get('duration'))}",
            f"**Doctors run:** {data.get('doctorCount', len(doctors))}",
            f"**Ended at:** {timestamp}",
        ]
        return "Queue stopped", "\n".join(lines), COLOR_STOP
    if event_type in ("next", "previous"):
        current = f"{data.get('currentDoctorName') or '-'}"
        if data.get("currentDoctorRank"):
            current += f" ({rank_label(data['currentDoctorRank'])})"
        lines = [
            f"**Runner:** {runner}",
            f"**Current turn:** {data.get('currentQueueNumber', '?')}/{data.get('totalDoctors') or '?'}",
            f"**Current doctor:** {current}",
        ]
        if data.get("elapsedTime"):
            lines.append(f"**Elapsed:** {data['elapsedTime']}")
        lines.append(f"**Updated at:** {timestamp}")
        return "Queue running", "\n".join(lines), COLOR_RUNNING
    if event_type == "update":
        lines = [
            f"**Edited by:** {runner}",
            f"**Doctors:** {data.get('doctorCount', len(doctors))}",
            f"**Roster:**\n{_roster_lines(doctors)}",
            f"**Time:** {timestamp}",
        ]
        return "Queue edited", "\n".join(lines), COLOR_UPDATE
    raise ValueError(f"invalid notification type: {event_type}")


class QueueNotifier:
    """Posts queue events to a chat webhook (Discord-compatible embeds)."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = QUEUE_WEBHOOK_TIMEOUT,
        http: Any | None = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else QUEUE_WEBHOOK_URL
        self.timeout = timeout
        self._http = http or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, event_type: str, data: dict[str, Any], message_id: Optional[str] = None) -> Optional[str]:
        """Sends or edits a notification and returns the webhook message id.

        Delivery problems are logged and reported as ``None``; they never
        interrupt the queue operation that triggered them.
        """
        title, description, color = build_message(event_type, data)
        if not self.enabled:
            return None
        payload = {
            "embeds": [
                {
                    "title": title,
                    "description": description,
                    "color": color,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ]
        }
        try:
            if message_id:
                response = self._http.patch(
                    f"{self.webhook_url.rstrip('/')}/messages/{message_id}",
                    json=payload,
                    timeout=self.timeout,
                )
            else:
                response = self._http.post(
                    self.webhook_url,
                    params={"wait": "true"},
                    json=payload,
                    timeout=self.timeout,
                )
            response.raise_for_status()
        except requests.HTTPError as exc:
            logger.warning("Queue notification failed with HTTP error: %s", exc)
            return None
        except requests.RequestException as exc:
            logger.warning("Queue notification failed: %s", exc)
            return None
        try:
            body = response.json()
        except ValueError:
            body = {}
        return str(body.get("id")) if body.get("id") else message_id

    def session_started(self, status: dict[str, Any]) -> Optional[str]:
        return self.notify(
            "start",
            {
                "runnerName": status.get("runnerName"),
                "doctors": status.get("doctors") or [],
                "doctorCount": len(status.get("doctors") or []),
            },
        )

    def session_updated(self, status: dict[str, Any], editor_name: Optional[str] = None) -> Optional[str]:
        return self.notify(
            "update",
            {
                "runnerName": editor_name or status.get("runnerName"),
                "doctors": status.get("doctors") or [],
                "doctorCount": len(status.get("doctors") or []),
            },
        )

    def session_stopped(self, runner_name: str, duration_ms: int, doctor_count: int) -> Optional[str]:
        return self.notify(
            "stop",
            {
                "runnerName": runner_name,
                "totalTime": format_duration(duration_ms),
                "doctorCount": doctor_count,
            },
        )
