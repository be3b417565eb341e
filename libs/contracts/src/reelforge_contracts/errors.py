from __future__ import annotations


class ReelforgeError(Exception):
    """Base exception for domain-safe errors."""


class ConfigurationError(ReelforgeError):
    pass


class SubmissionError(ReelforgeError):
    """Bad or missing submission fields. Reported to the caller, never retried."""

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.details = details


class ResourceFetchError(ReelforgeError):
    """Remote audio could not be downloaded."""


class MediaToolError(ReelforgeError):
    """An external media tool (trim, probe, mux, concat, render) failed."""

    def __init__(self, message: str, *, argv: list[str] | None = None, stderr: str | None = None) -> None:
        super().__init__(message)
        self.argv = argv or []
        self.stderr = stderr or ""


class DataIntegrityError(ReelforgeError):
    """A malformed job payload reached the executor."""


class PipelineError(ReelforgeError):
    pass


class JobStateError(ReelforgeError):
    """Illegal job state transition, e.g. touching a terminal job."""
