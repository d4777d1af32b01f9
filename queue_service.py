from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from models import ACTIVE_QUEUE_KEY, QueueHistory, QueueStatus
from queue_errors import ConflictError, ForbiddenError, ValidationError
from queue_requests import (
    AdvanceRequest,
    EditRosterRequest,
    Participant,
    StartRequest,
    StatusUpdateRequest,
    StopRequest,
)

QUEUE_MIN_DOCTORS = int(os.getenv("QUEUE_MIN_DOCTORS", "4"))

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _elapsed_ms(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


def idle_status() -> dict[str, Any]:
    return {
        "isRunning": False,
        "currentQueueIndex": 0,
        "doctors": [],
        "currentDoctor": None,
    }


def can_mutate(identity, session: Optional[QueueStatus]) -> bool:
    """Whether ``identity`` may change ``session``.

    ``session`` must be the row as currently persisted, never a client claim.
    """
    if session is None:
        return True
    if identity.role == "admin":
        return True
    return bool(session.runner_id) and str(session.runner_id) == str(identity.id)


class QueueManager:
    """Runs the single live duty queue.

    Every mutation reads the persisted row, authorizes against it and
    replaces it while holding ``_write_lock``; the unique ``active_key``
    column backs this up across processes.
    """

    def __init__(
        self,
        session_factory: Callable,
        min_doctors: int = QUEUE_MIN_DOCTORS,
        record_history: bool = True,
        notifier: Any | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._session_factory = session_factory
        self.min_doctors = min_doctors
        self.record_history = record_history
        self.notifier = notifier
        self._clock = clock or utcnow
        self._write_lock = threading.RLock()
        self._pending: list[threading.Thread] = []
        self._pending_lock = threading.Lock()

    # -- reads -----------------------------------------------------------

    @staticmethod
    def _active_row(session) -> Optional[QueueStatus]:
        return (
            session.query(QueueStatus)
            .filter(QueueStatus.is_running.is_(True))
            .order_by(QueueStatus.last_updated.desc())
            .first()
        )

    def serialize(self, row: Optional[QueueStatus]) -> dict[str, Any]:
        if row is None:
            return idle_status()
        doctors = list(row.doctors or [])
        index = row.current_queue_index or 0
        current = doctors[index] if 0 <= index < len(doctors) else None
        return {
            "isRunning": bool(row.is_running),
            "currentQueueIndex": index,
            "doctors": doctors,
            "currentDoctor": current,
            "startTime": isoformat(row.start_time),
            "elapsedTime": _elapsed_ms(row.start_time, self._clock()),
            "runnerName": row.runner_name,
            "runnerId": row.runner_id,
            "lastUpdated": isoformat(row.last_updated),
        }

    def get_status(self) -> dict[str, Any]:
        with self._session_factory() as session:
            return self.serialize(self._active_row(session))

    def running_count(self) -> int:
        with self._session_factory() as session:
            return session.query(QueueStatus).filter(QueueStatus.is_running.is_(True)).count()

    # -- validation ------------------------------------------------------

    def _check_roster(self, doctors: list) -> None:
        if len(doctors) < self.min_doctors:
            raise ValidationError(f"At least {self.min_doctors} doctors are required to run the queue")

    @staticmethod
    def _check_runner_name(name: Optional[str]) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("Runner name is required")
        return cleaned

    @staticmethod
    def _roster_records(doctors: list[Participant]) -> list[dict[str, Any]]:
        return [doctor.to_record() for doctor in doctors]

    # -- persistence helpers ---------------------------------------------

    @staticmethod
    def _delete_running(session) -> int:
        # plural on purpose: clears every running row, not only the one we read.
        # Rows already loaded are detached so a reused primary key cannot clash.
        session.expunge_all()
        try:
            return (
                session.query(QueueStatus)
                .filter(QueueStatus.is_running.is_(True))
                .delete(synchronize_session=False)
            )
        except OperationalError as exc:
            # another writer holds the store (sqlite "database is locked")
            session.rollback()
            logger.warning("Queue write blocked by a concurrent writer: %s", exc)
            raise ConflictError("Another queue write is in progress") from exc

    @staticmethod
    def _commit(session) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.warning("Concurrent queue write rejected: %s", exc)
            raise ConflictError("Another queue session was started at the same time") from exc
        except OperationalError as exc:
            session.rollback()
            logger.warning("Queue write blocked by a concurrent writer: %s", exc)
            raise ConflictError("Another queue write is in progress") from exc

    def _history_row(
        self,
        row: QueueStatus,
        identity,
        status: str,
        ended_at: datetime,
    ) -> QueueHistory:
        doctors = list(row.doctors or [])
        total = len(doctors)
        completed = min((row.current_queue_index or 0) + 1, total) if total else 0
        duration = _elapsed_ms(row.start_time, ended_at)
        metadata = {"averageTimePerDoctor": duration // completed if completed else 0}
        return QueueHistory(
            session_id=uuid.uuid4().hex,
            runner_id=row.runner_id,
            runner_name=row.runner_name,
            doctors=doctors,
            start_time=row.start_time or ended_at,
            end_time=ended_at,
            duration=duration,
            total_doctors=total,
            completed_doctors=completed,
            status=status,
            stopped_by=identity.id,
            stopped_by_name=identity.name,
            metadata_json=json.dumps(metadata),
            created_at=ended_at,
        )

    def _notify(self, method: str, *args) -> None:
        if not self.notifier:
            return
        notifier = self.notifier

        def task():
            try:
                getattr(notifier, method)(*args)
            except Exception:
                logger.exception("Queue notification %s failed", method)

        # delivery runs off the request thread
        thread = threading.Thread(target=task, daemon=True)
        with self._pending_lock:
            self._pending = [item for item in self._pending if item.is_alive()]
            self._pending.append(thread)
            thread.start()

    def wait_for_notifications(self, timeout: float | None = None) -> bool:
        """Blocks until queued notifications finish; False if any is still running."""
        with self._pending_lock:
            pending = list(self._pending)
        for thread in pending:
            thread.join(timeout)
        return not any(thread.is_alive() for thread in pending)

    # -- transitions -----------------------------------------------------

    def start(self, identity, request: StartRequest) -> dict[str, Any]:
        """Idle -> Running. Restarts the caller's own session (or any, for admins)."""
        self._check_roster(request.doctors)
        runner_name = self._check_runner_name(request.runner_name)
        with self._write_lock, self._session_factory() as session:
            existing = self._active_row(session)
            if existing is not None and not can_mutate(identity, existing):
                logger.warning(
                    "Start by %s rejected: queue owned by %s is running",
                    identity.id,
                    existing.runner_id,
                )
                raise ConflictError("Only the runner or an admin can restart a running queue")
            now = self._clock()
            replaced = existing
            self._delete_running(session)
            if replaced is not None and self.record_history:
                session.add(self._history_row(replaced, identity, "cancelled", now))
            row = QueueStatus(
                active_key=ACTIVE_QUEUE_KEY,
                is_running=True,
                current_queue_index=0,
                doctors=self._roster_records(request.doctors),
                start_time=now,
                elapsed_time=0,
                runner_id=identity.id,
                runner_name=runner_name,
                last_updated=now,
                created_at=now,
            )
            session.add(row)
            self._commit(session)
            status = self.serialize(row)
        if replaced is not None:
            logger.info("Queue restarted by %s (previous runner %s)", identity.id, replaced.runner_id)
        else:
            logger.info("Queue started by %s with %d doctors", identity.id, len(request.doctors))
        self._notify("session_started", status)
        return status

    def replace(self, identity, request: StatusUpdateRequest) -> dict[str, Any]:
        """Start-or-replace from a full status push by the runner's client."""
        with self._write_lock, self._session_factory() as session:
            existing = self._active_row(session)
            if existing is not None and not can_mutate(identity, existing):
                logger.warning(
                    "Status push by %s rejected: queue owned by %s",
                    identity.id,
                    existing.runner_id,
                )
                raise ConflictError("Only the runner or an admin can update the running queue")
            if request.doctors is not None:
                doctors = self._roster_records(request.doctors)
            else:
                doctors = list(existing.doctors or []) if existing is not None else []
            self._check_roster(doctors)
            runner_name = self._check_runner_name(
                request.runner_name
                if request.runner_name is not None
                else (existing.runner_name if existing is not None else identity.name)
            )
            index = request.current_queue_index
            if index is None:
                index = existing.current_queue_index if existing is not None else 0
            if index >= len(doctors):
                index = 0
            now = self._clock()
            if existing is not None:
                start_time = existing.start_time
                runner_id = existing.runner_id
            else:
                start_time = now
                runner_id = identity.id
            elapsed = request.elapsed_time
            if elapsed is None:
                elapsed = _elapsed_ms(start_time, now)
            self._delete_running(session)
            row = QueueStatus(
                active_key=ACTIVE_QUEUE_KEY,
                is_running=True,
                current_queue_index=index,
                doctors=doctors,
                start_time=start_time,
                elapsed_time=elapsed,
                runner_id=runner_id,
                runner_name=runner_name,
                last_updated=now,
                created_at=existing.created_at if existing is not None else now,
            )
            session.add(row)
            self._commit(session)
            status = self.serialize(row)
        if existing is None:
            logger.info("Queue started by %s via status push", identity.id)
            self._notify("session_started", status)
        return status

    def step(self, identity, request: AdvanceRequest) -> dict[str, Any]:
        """Moves the current pointer one place, wrapping at both ends."""
        with self._write_lock, self._session_factory() as session:
            row = self._active_row(session)
            if row is None:
                return idle_status()
            if not can_mutate(identity, row):
                logger.warning("Queue %s by %s rejected", request.direction, identity.id)
                raise ForbiddenError("Only the runner or an admin can move the queue")
            size = len(row.doctors or [])
            if size == 0:
                return self.serialize(row)
            index = row.current_queue_index or 0
            if not 0 <= index < size:
                index = 0
            row.current_queue_index = (index + request.step) % size
            row.last_updated = self._clock()
            self._commit(session)
            return self.serialize(row)

    def advance(self, identity) -> dict[str, Any]:
        return self.step(identity, AdvanceRequest(direction="next"))

    def retreat(self, identity) -> dict[str, Any]:
        return self.step(identity, AdvanceRequest(direction="previous"))

    def edit_roster(self, identity, request: EditRosterRequest) -> dict[str, Any]:
        """Replaces the roster and/or runner name.

        A shrinking roster that reaches the pointer (pointer at or past the new
        last index) sends it back to 0, not to the new last index.
        """
        doctors = None
        if request.doctors is not None:
            self._check_roster(request.doctors)
            doctors = self._roster_records(request.doctors)
        runner_name = None
        if request.runner_name is not None:
            runner_name = self._check_runner_name(request.runner_name)
        with self._write_lock, self._session_factory() as session:
            row = self._active_row(session)
            if row is None:
                # nothing running: hand back the validated draft without persisting it
                draft = idle_status()
                draft["doctors"] = doctors or []
                draft["runnerName"] = runner_name
                return draft
            if not can_mutate(identity, row):
                logger.warning("Roster edit by %s rejected", identity.id)
                raise ForbiddenError("Only the runner or an admin can edit the running queue")
            if doctors is not None:
                index = row.current_queue_index or 0
                shrunk = len(doctors) < len(row.doctors or [])
                if index >= len(doctors) or (shrunk and index >= len(doctors) - 1):
                    row.current_queue_index = 0
                row.doctors = doctors
            if runner_name is not None:
                row.runner_name = runner_name
            row.last_updated = self._clock()
            self._commit(session)
            status = self.serialize(row)
        self._notify("session_updated", status, identity.name or status["runnerName"])
        return status

    def stop(self, identity, request: StopRequest | None = None) -> dict[str, Any]:
        """Running -> Idle. Stopping an idle queue succeeds with nothing deleted."""
        request = request or StopRequest()
        with self._write_lock, self._session_factory() as session:
            existing = self._active_row(session)
            if existing is not None and not can_mutate(identity, existing):
                logger.warning("Stop by %s rejected: queue owned by %s", identity.id, existing.runner_id)
                raise ForbiddenError("Only the runner or an admin can stop the queue")
            now = self._clock()
            deleted = self._delete_running(session)
            history = None
            if existing is not None and self.record_history:
                history = self._history_row(existing, identity, request.status, now)
                session.add(history)
            self._commit(session)
        result: dict[str, Any] = {
            "success": True,
            "message": "Queue stopped",
            "deletedCount": deleted or 0,
        }
        if history is not None:
            result["historyId"] = history.session_id
        if existing is not None:
            logger.info("Queue stopped by %s (%d rows removed)", identity.id, deleted or 0)
            self._notify(
                "session_stopped",
                existing.runner_name,
                _elapsed_ms(existing.start_time, now),
                len(existing.doctors or []),
            )
        return result

    def apply_status_update(self, identity, request: StatusUpdateRequest) -> dict[str, Any]:
        if not request.is_running:
            return self.stop(identity, StopRequest())
        return {"success": True, "queueStatus": self.replace(identity, request)}
