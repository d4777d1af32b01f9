from __future__ import annotations


class QueueError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message}


class ValidationError(QueueError):
    status_code = 400


class UnauthenticatedError(QueueError):
    status_code = 401


class ForbiddenError(QueueError):
    status_code = 403


class ConflictError(ForbiddenError):
    """Another party's queue is running; clients re-poll instead of retrying."""
