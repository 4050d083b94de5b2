"""
Defines custom exceptions for the application to allow for more specific error handling.
"""

from typing import Iterable, Optional


class HlsBookError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(HlsBookError):
    """Raised for issues related to job file loading or validation."""


class JobCancelledError(HlsBookError):
    """Raised when a job-wide cancellation is observed at a checkpoint."""


class MalformedPlaylistError(HlsBookError):
    """
    Raised when a playlist document is unparseable or structurally invalid.

    Carries the document URI and the 1-based line number of the offending line.
    """

    def __init__(
        self,
        message: str,
        uri: str = "",
        line_number: Optional[int] = None,
        line: Optional[str] = None,
    ):
        self.uri = uri
        self.line_number = line_number
        self.line = line
        location = uri or "<playlist>"
        if line_number is not None:
            location = f"{location}:{line_number}"
        detail = f"{message} ({location})"
        if line:
            detail += f": {line!r}"
        super().__init__(detail)


class PlaylistLoadError(HlsBookError):
    """Raised when a playlist document cannot be read from its source."""

    def __init__(
        self,
        message: str,
        uri: str = "",
        status: Optional[int] = None,
    ):
        self.uri = uri
        self.status = status
        super().__init__(f"{message} ({uri or '<playlist>'})")


class SegmentFetchError(HlsBookError):
    """Raised for a single failed segment request."""

    def __init__(
        self,
        message: str,
        index: Optional[int] = None,
        retryable: bool = True,
        status: Optional[int] = None,
    ):
        self.index = index
        self.retryable = retryable
        self.status = status
        super().__init__(message)


class SourceItemBlockedError(HlsBookError):
    """Raised when a source item cannot be assembled because segments failed."""

    def __init__(
        self,
        item_key: str,
        failed_indices: Iterable[int] = (),
        cause: Optional[BaseException] = None,
    ):
        self.item_key = item_key
        self.failed_indices = sorted(failed_indices)
        self.cause = cause
        preview = ", ".join(str(i) for i in self.failed_indices[:10])
        if len(self.failed_indices) > 10:
            preview += ", ..."
        message = (
            f"Item '{item_key}' is blocked: {len(self.failed_indices)} segment(s) "
            f"failed [{preview}]"
        )
        if cause is not None:
            message += f" (last error: {cause})"
        super().__init__(message)


class DiscontinuityError(HlsBookError):
    """Raised when recorded segment indices have gaps or duplicates."""

    def __init__(
        self,
        item_key: str,
        missing: Iterable[int] = (),
        duplicates: Iterable[int] = (),
    ):
        self.item_key = item_key
        self.missing = sorted(missing)
        self.duplicates = sorted(duplicates)
        parts = []
        if self.missing:
            parts.append(f"missing {self.missing}")
        if self.duplicates:
            parts.append(f"duplicated {self.duplicates}")
        super().__init__(
            f"Segment sequence for item '{item_key}' is discontinuous: "
            + "; ".join(parts or ["unexpected indices"])
        )


class EncodingError(HlsBookError):
    """Raised when the external encoder/muxer fails or violates its contract."""

    def __init__(
        self,
        message: str,
        command: Optional[list[str]] = None,
        stderr: Optional[str] = None,
    ):
        self.command = command
        self.stderr = stderr
        detail = message
        if stderr:
            tail = stderr.strip().splitlines()[-3:]
            detail += ": " + " | ".join(tail)
        super().__init__(detail)


class ChapterIntegrityError(HlsBookError):
    """Raised when a chapter table breaks the gapless, ordered invariant."""

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        if index is not None:
            message = f"Chapter {index}: {message}"
        super().__init__(message)


class MetadataValidationError(HlsBookError):
    """Raised when required metadata is missing at finalize time."""

    def __init__(self, missing_fields: Iterable[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(
            "Required metadata missing: " + ", ".join(self.missing_fields)
        )


class FileIntegrityError(HlsBookError):
    """Raised when a written container fails a post-write integrity check."""
