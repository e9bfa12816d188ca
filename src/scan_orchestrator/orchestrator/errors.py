"""Exception taxonomy for the scan orchestration engine."""

from __future__ import annotations


class ScanOrchestratorError(RuntimeError):
    """Base class for engine errors surfaced to CLI and API callers."""


class QueueItemNotFoundError(ScanOrchestratorError):
    def __init__(self, queue_id: str) -> None:
        super().__init__(f"Queue item not found: {queue_id}")
        self.queue_id = queue_id


class AlreadyQueuedError(ScanOrchestratorError):
    """An active (pending/running) item already exists for the project."""

    code = "SCAN_ALREADY_QUEUED"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"A scan is already queued or running for project {project_id}.")
        self.project_id = project_id


class InvalidTransitionError(ScanOrchestratorError):
    """Requested queue status change is not allowed from the current status."""


class ClaimConflict(ScanOrchestratorError):  # noqa: N818
    """Another worker moved the candidate row out of `pending` first."""


class StuckJob(ScanOrchestratorError):  # noqa: N818
    """Diagnostic for a running item force-failed by the sweep."""


class ProjectConfigurationError(ScanOrchestratorError):
    """Project, queries or models needed by a scan are missing."""


class InsufficientCredits(ScanOrchestratorError):  # noqa: N818
    def __init__(self, message: str = "Insufficient credits") -> None:
        super().__init__(message)


class ReservationCreationFailure(ScanOrchestratorError):  # noqa: N818
    pass


class ReservationStateError(ScanOrchestratorError):
    """Reservation was already consumed or released."""


class ScanCreationFailure(ScanOrchestratorError):  # noqa: N818
    pass


class PartialChunkFailure(ScanOrchestratorError):  # noqa: N818
    """A chunk raised on both its attempt and its single retry."""


class ProviderError(ScanOrchestratorError):
    """A probe or evaluation call to an AI provider failed."""

    def __init__(self, model_id: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{model_id}: {message}")
        self.model_id = model_id
        self.status_code = status_code


class EvaluationParseError(ScanOrchestratorError):
    """Evaluation model output was not a usable metrics object."""


class UnknownModelError(ScanOrchestratorError, ValueError):
    def __init__(self, model_id: str) -> None:
        super().__init__(f"Unknown model id: {model_id!r}")
        self.model_id = model_id
