from __future__ import annotations

import json
import math
from collections import Counter
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import func

from models import HISTORY_STATUSES, QueueHistory
from queue_errors import ValidationError
from queue_service import isoformat, utcnow

ANALYTICS_PERIODS = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
    "all": None,
}
TREND_DAYS = 30
TOP_RUNNERS_LIMIT = 10


def _to_int(value: Optional[str], fallback: int) -> int:
    if value is None:
        return fallback
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _parse_datetime(value: Optional[str], field: str) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    return parsed


def parse_pagination(args: Mapping[str, str]) -> dict[str, int]:
    page = max(1, _to_int(args.get("page"), 1))
    limit = min(100, max(1, _to_int(args.get("limit"), 10)))
    return {"page": page, "limit": limit, "skip": (page - 1) * limit}


def serialize_history(row: QueueHistory) -> dict[str, Any]:
    try:
        metadata = json.loads(row.metadata_json) if row.metadata_json else {}
    except ValueError:
        metadata = {}
    return {
        "sessionId": row.session_id,
        "runnerId": row.runner_id,
        "runnerName": row.runner_name,
        "doctors": list(row.doctors or []),
        "startTime": isoformat(row.start_time),
        "endTime": isoformat(row.end_time),
        "duration": row.duration or 0,
        "totalDoctors": row.total_doctors,
        "completedDoctors": row.completed_doctors or 0,
        "status": row.status,
        "stoppedBy": row.stopped_by,
        "stoppedByName": row.stopped_by_name,
        "metadata": metadata,
        "createdAt": isoformat(row.created_at),
    }


class QueueHistoryManager:
    """Read side of the append-only run history: listing and reporting."""

    def __init__(self, session_factory: Callable, clock: Callable[[], datetime] | None = None):
        self._session_factory = session_factory
        self._clock = clock or utcnow

    def _filtered(self, session, filters: Mapping[str, Any]):
        query = session.query(QueueHistory)
        runner_id = filters.get("runnerId")
        if runner_id:
            query = query.filter(QueueHistory.runner_id == runner_id)
        status = filters.get("status")
        if status:
            if status not in HISTORY_STATUSES:
                raise ValidationError(f"status must be one of {', '.join(HISTORY_STATUSES)}")
            query = query.filter(QueueHistory.status == status)
        start = _parse_datetime(filters.get("startDate"), "startDate")
        if start is not None:
            query = query.filter(QueueHistory.start_time >= start)
        end = _parse_datetime(filters.get("endDate"), "endDate")
        if end is not None:
            if len(filters["endDate"].strip()) <= 10:
                # a bare date covers the whole day
                end = datetime.combine(end.date(), time(23, 59, 59, 999000))
            query = query.filter(QueueHistory.start_time <= end)
        return query

    def list_sessions(self, args: Mapping[str, Any]) -> dict[str, Any]:
        paging = parse_pagination(args)
        with self._session_factory() as session:
            query = self._filtered(session, args)
            total = query.count()
            rows = (
                query.order_by(QueueHistory.start_time.desc(), QueueHistory.id.desc())
                .offset(paging["skip"])
                .limit(paging["limit"])
                .all()
            )
        return {
            "data": [serialize_history(row) for row in rows],
            "pagination": {
                "page": paging["page"],
                "limit": paging["limit"],
                "total": total,
                "pages": math.ceil(total / paging["limit"]),
            },
        }

    def _range_filters(self, args: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        period = args.get("period") or "30d"
        if args.get("startDate") and args.get("endDate"):
            return period, {"startDate": args["startDate"], "endDate": args["endDate"]}
        if period not in ANALYTICS_PERIODS:
            period = "all"
        window = ANALYTICS_PERIODS[period]
        if window is None:
            return period, {}
        return period, {"startDate": isoformat(self._clock() - window)}

    def analytics(self, args: Mapping[str, Any]) -> dict[str, Any]:
        period, filters = self._range_filters(args)
        with self._session_factory() as session:
            query = self._filtered(session, filters)
            total_sessions = query.count()
            by_status = (
                query.with_entities(QueueHistory.status, func.count(QueueHistory.id))
                .group_by(QueueHistory.status)
                .order_by(func.count(QueueHistory.id).desc())
                .all()
            )
            top_runners = (
                query.with_entities(
                    QueueHistory.runner_id,
                    func.count(QueueHistory.id),
                    func.max(QueueHistory.runner_name),
                )
                .group_by(QueueHistory.runner_id)
                .order_by(func.count(QueueHistory.id).desc())
                .limit(TOP_RUNNERS_LIMIT)
                .all()
            )
            averages = query.with_entities(
                func.avg(QueueHistory.duration),
                func.avg(QueueHistory.total_doctors),
                func.avg(QueueHistory.completed_doctors),
                func.sum(QueueHistory.duration),
                func.sum(QueueHistory.total_doctors),
                func.sum(QueueHistory.completed_doctors),
            ).one()
            start_times = [row[0] for row in query.with_entities(QueueHistory.start_time).all()]
            longest = query.order_by(QueueHistory.duration.desc()).first()
            shortest = query.order_by(QueueHistory.duration.asc()).first()

        hourly = Counter(value.hour for value in start_times if value)
        return {
            "summary": {"totalSessions": total_sessions, "period": period},
            "averages": {
                "avgDuration": float(averages[0] or 0),
                "avgDoctors": float(averages[1] or 0),
                "avgCompleted": float(averages[2] or 0),
                "totalDuration": int(averages[3] or 0),
                "totalDoctors": int(averages[4] or 0),
                "totalCompleted": int(averages[5] or 0),
            },
            "breakdowns": {
                "byStatus": [{"status": status, "count": count} for status, count in by_status],
            },
            "trends": {
                "daily": self._daily_trend(start_times),
                "hourly": [{"hour": hour, "count": hourly[hour]} for hour in sorted(hourly)],
            },
            "topRunners": [
                {"runnerId": runner_id, "count": count, "name": name}
                for runner_id, count, name in top_runners
            ],
            "records": {
                "longest": serialize_history(longest) if longest else None,
                "shortest": serialize_history(shortest) if shortest else None,
            },
        }

    def _daily_trend(self, start_times: list[datetime]) -> list[dict[str, Any]]:
        per_day = Counter(value.date() for value in start_times if value)
        today: date = self._clock().date()
        days = []
        for offset in range(TREND_DAYS - 1, -1, -1):
            day = today - timedelta(days=offset)
            days.append({"date": day.isoformat(), "count": per_day.get(day, 0)})
        return days
