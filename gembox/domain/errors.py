"""
Exception taxonomy shared by the core components.

Routers translate these into HTTP responses; the core never builds responses
itself.
"""

from __future__ import annotations


class GemboxError(Exception):
    """Base class for all repository errors."""


class ValidationError(GemboxError):
    """Missing or invalid upload payload (bad filename, empty body, too large)."""


class GemFormatError(ValidationError):
    """The archive could not be read as a gem."""


class ConflictError(GemboxError):
    """A different archive already exists under the same filename."""

    def __init__(self, filename: str, message: str | None = None):
        self.filename = filename
        super().__init__(
            message or "Gem already exists, you must delete the existing version first."
        )


class StorageError(GemboxError):
    """The archive directory cannot be written."""


class IndexRebuildError(GemboxError):
    """
    Regenerating the index failed.

    ``stored`` is True when the triggering action (an upload or delete) did
    reach the package store before the refresh failed.
    """

    def __init__(self, message: str, stored: bool = False):
        self.stored = stored
        super().__init__(message)


class DocGenerationError(GemboxError):
    """Extracting an archive or building its documentation failed."""


class MarshalError(ValueError):
    """Malformed or unsupported Ruby Marshal data."""
