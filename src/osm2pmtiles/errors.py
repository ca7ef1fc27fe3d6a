"""Exception types raised by the build pipeline."""

from __future__ import annotations

from pathlib import Path


class PipelineError(RuntimeError):
    """Base class for fatal pipeline failures."""


class ConfigurationError(PipelineError):
    """Raised when a precondition for the run is not met."""


class FetchError(PipelineError):
    """Raised when a download fails after every attempt and fallback."""

    def __init__(self, url: str, attempts: int, detail: str = "") -> None:
        self.url = url
        self.attempts = attempts
        self.detail = detail
        message = f"Failed to fetch {url} after {attempts} attempt(s)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class IntegrityError(PipelineError):
    """Raised when a freshly downloaded artifact fails its checksum."""

    def __init__(self, path: Path, checksum_path: Path) -> None:
        self.path = path
        self.checksum_path = checksum_path
        super().__init__(
            f"Checksum mismatch for freshly downloaded {path.name} "
            f"(sidecar {checksum_path.name}); refusing to continue."
        )


class StageError(PipelineError):
    """Raised when an external tool exits non-zero."""

    def __init__(self, region: str, stage: str, returncode: int, detail: str = "") -> None:
        self.region = region
        self.stage = stage
        self.returncode = returncode
        self.detail = detail
        message = f"{stage} failed for region {region} (exit code {returncode})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ExtractionError(PipelineError):
    """Raised when an archive cannot be unpacked by any extraction path."""


class PipelineCancelled(PipelineError):
    """Raised when a cancellation request is observed between steps."""
