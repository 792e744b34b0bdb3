"""Error types raised by the task client, poller, stores and pipeline."""

from __future__ import annotations

from typing import Dict, Optional


class AmicoError(RuntimeError):
    """Base class for every error surfaced to pipeline callers."""

    classification = "error"

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail


class TripoApiError(AmicoError):
    """An error response (HTTP or envelope level) from the Tripo API."""

    classification = "api error"

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        status_code: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message, detail)
        self.status_code = status_code
        self.code = code


class UploadError(TripoApiError):
    classification = "upload failed"


class TaskCreationError(TripoApiError):
    classification = "task creation failed"


class StatusQueryError(TripoApiError):
    classification = "status query failed"


class TaskFailedError(AmicoError):
    """The remote task reached a failed or cancelled terminal state."""

    classification = "task failed"

    def __init__(self, status: str, task_id: str = "", label: str = "") -> None:
        subject = " ".join(part for part in ("Tripo", label or "task", task_id) if part)
        super().__init__(f"{subject} ended with status {status}")
        self.status = status
        self.task_id = task_id


class TaskTimeoutError(AmicoError):
    """The poll deadline elapsed before the task became terminal."""

    classification = "task timed out"

    def __init__(self, task_id: str, max_wait_s: float, last_status: Optional[str] = None) -> None:
        super().__init__(f"Tripo task {task_id} did not finish within {max_wait_s:g}s")
        self.task_id = task_id
        self.max_wait_s = max_wait_s
        self.last_status = last_status


class NoModelUrlError(AmicoError):
    """A successful task carried no usable model URL in its output."""

    classification = "no model url"

    def __init__(self, output: Optional[Dict[str, object]] = None) -> None:
        super().__init__("Task output contains no model URL", detail=repr(output or {}))
        self.output = output or {}


class CacheWriteError(AmicoError):
    classification = "cache write failed"


class SessionPersistError(AmicoError):
    classification = "checkpoint failed"


class StyleConversionError(AmicoError):
    classification = "style conversion failed"


class InvalidTransitionError(AmicoError):
    classification = "invalid transition"


class StageInFlightError(AmicoError):
    classification = "stage already running"


class GalleryPersistError(AmicoError):
    classification = "gallery write failed"


class EntityNotFoundError(AmicoError):
    """No gallery character has the requested id."""

    classification = "unknown character"

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"No saved character with id {entity_id}")
        self.entity_id = entity_id
