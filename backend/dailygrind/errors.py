"""Domain errors raised below the HTTP layer.

Every error carries the HTTP status it maps to; ``main`` renders them as
``{"detail": message}``, the same body ``HTTPException`` produces.
"""

from __future__ import annotations

from fastapi import status


class DailyGrindError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(DailyGrindError):
    """Malformed or missing input caught before any mutation."""


class NotFound(DailyGrindError):
    status_code = status.HTTP_404_NOT_FOUND


class TimerAlreadyRunning(DailyGrindError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "A timer is already running. Stop it before starting a new one.") -> None:
        super().__init__(message)


class AuthError(DailyGrindError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PersistenceError(DailyGrindError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class SummarizationError(DailyGrindError):
    status_code = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "AuthError",
    "DailyGrindError",
    "NotFound",
    "PersistenceError",
    "SummarizationError",
    "TimerAlreadyRunning",
    "ValidationFailed",
]
