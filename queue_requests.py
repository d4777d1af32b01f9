from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from queue_errors import ValidationError

RequestT = TypeVar("RequestT", bound=BaseModel)


class QueueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Participant(QueueRequest):
    id: str = Field(alias="_id", min_length=1)
    name: str = Field(min_length=1)
    username: Optional[str] = None
    doctor_rank: Optional[str] = Field(default=None, alias="doctorRank")

    @field_validator("id", "doctor_rank", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("participant name must not be blank")
        return value

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StartRequest(QueueRequest):
    doctors: list[Participant] = Field(default_factory=list)
    runner_name: str = Field(default="", alias="runnerName")


class StopRequest(QueueRequest):
    status: Literal["completed", "stopped", "cancelled"] = "stopped"


class AdvanceRequest(QueueRequest):
    direction: Literal["next", "previous"] = "next"

    @property
    def step(self) -> int:
        return 1 if self.direction == "next" else -1


class EditRosterRequest(QueueRequest):
    doctors: Optional[list[Participant]] = None
    runner_name: Optional[str] = Field(default=None, alias="runnerName")

    @model_validator(mode="after")
    def _require_change(self) -> "EditRosterRequest":
        if self.doctors is None and self.runner_name is None:
            raise ValueError("doctors or runnerName is required")
        return self


class StatusUpdateRequest(QueueRequest):
    """Body of the legacy ``POST /api/queue/status`` write."""

    is_running: bool = Field(alias="isRunning")
    current_queue_index: Optional[int] = Field(default=None, alias="currentQueueIndex", ge=0)
    doctors: Optional[list[Participant]] = None
    start_time: Optional[datetime] = Field(default=None, alias="startTime")
    elapsed_time: Optional[int] = Field(default=None, alias="elapsedTime", ge=0)
    runner_name: Optional[str] = Field(default=None, alias="runnerName")

    @field_validator("start_time", mode="before")
    @classmethod
    def _blank_start_time(cls, value: Any) -> Any:
        if value == "":
            return None
        return value


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "__root__")
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid request"


def parse_request(model: Type[RequestT], payload: Any) -> RequestT:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("expected JSON payload")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc
