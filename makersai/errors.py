"""Error taxonomy shared by the pipeline and the HTTP layer."""

from typing import Any, Dict, List, Optional


class MakersAIError(Exception):
    """Base class for errors surfaced to callers."""


class AdmissionRejected(MakersAIError):
    """Raised when a client exhausted its request window."""

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None) -> None:
        self.retry_after_seconds = retry_after_seconds
        self.message = message or "Too many requests from this IP, please try again later."
        super().__init__(self.message)


class ValidationFailed(MakersAIError):
    """Raised when a request is malformed. Not retryable without a client fix."""

    def __init__(self, details: List[Dict[str, Any]]) -> None:
        self.details = details
        summary = "; ".join(f"{item['field']}: {item['message']}" for item in details)
        super().__init__(f"Validation failed: {summary}" if summary else "Validation failed")


class StageFailed(MakersAIError):
    """Raised when an upstream stage errors or violates its response contract.

    ``message`` is the generic, user-facing text for the stage; upstream details
    are logged and never attached here. When a construction run stops part way,
    ``completed_results`` holds the parts that finished before the failure.
    """

    def __init__(
        self,
        stage: str,
        message: str,
        part_name: Optional[str] = None,
        part_index: Optional[int] = None,
    ) -> None:
        self.stage = stage
        self.message = message
        self.part_name = part_name
        self.part_index = part_index
        self.completed_results: List[Any] = []
        super().__init__(message)

    def for_part(self, part_name: str, part_index: int) -> "StageFailed":
        """Return a copy of this error tagged with the construction part it aborted."""
        return StageFailed(self.stage, self.message, part_name=part_name, part_index=part_index)
