from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
)

from db import Base

ACTIVE_QUEUE_KEY = "active-queue"

HISTORY_STATUSES = ("completed", "stopped", "cancelled")


class QueueStatus(Base):
    """The live queue run. Rows exist only while a queue is running."""

    __tablename__ = "queue_status"

    id = Column(Integer, primary_key=True)
    # Set to ACTIVE_QUEUE_KEY while running; the unique index keeps a single running row.
    active_key = Column(String, unique=True, nullable=True)
    is_running = Column(Boolean, nullable=False, default=False, index=True)
    current_queue_index = Column(Integer, nullable=False, default=0)
    doctors = Column(JSON, nullable=False, default=list)
    start_time = Column(DateTime)
    elapsed_time = Column(Integer, nullable=False, default=0)
    runner_id = Column(String, index=True, nullable=False)
    runner_name = Column(String, nullable=False)
    last_updated = Column(DateTime, index=True)
    created_at = Column(DateTime)


class QueueHistory(Base):
    __tablename__ = "queue_history"

    id = Column(Integer, primary_key=True)
    session_id = Column(String, unique=True, index=True, nullable=False)
    runner_id = Column(String, index=True, nullable=False)
    runner_name = Column(String, nullable=False)
    doctors = Column(JSON, nullable=False, default=list)
    start_time = Column(DateTime, index=True, nullable=False)
    end_time = Column(DateTime)
    duration = Column(Integer, nullable=False, default=0)
    total_doctors = Column(Integer, nullable=False)
    completed_doctors = Column(Integer, nullable=False, default=0)
    status = Column(String, index=True, nullable=False, default="completed")
    stopped_by = Column(String)
    stopped_by_name = Column(String)
    metadata_json = Column(Text)
    created_at = Column(DateTime, index=True)
