from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List

from gembox.domain.models import PutResult, StoreEvent

StoreListener = Callable[[StoreEvent], None]


class PackageStore(ABC):
    """
    Abstract base class for archive storage.

    Archives are keyed by filename and never edited in place.
    """

    def __init__(self) -> None:
        self._listeners: List[StoreListener] = []

    def add_listener(self, listener: StoreListener) -> None:
        """Register a callback run after every successful change."""
        self._listeners.append(listener)

    def _notify(self, event: StoreEvent) -> None:
        for listener in self._listeners:
            listener(event)

    @abstractmethod
    def put(self, filename: str, content: bytes) -> PutResult:
        """
        Store an archive.

        Raises:
            ValidationError: bad filename or payload.
            ConflictError: a different archive exists and replacing is disallowed.
            StorageError: the archive directory is not writable.
        """
        pass

    @abstractmethod
    def delete(self, filename: str) -> bool:
        """Remove an archive; returns False if there was nothing to remove."""
        pass

    @abstractmethod
    def get(self, filename: str) -> bytes:
        """Return the archive's bytes (FileNotFoundError if absent)."""
        pass

    @abstractmethod
    def exists(self, filename: str) -> bool:
        pass

    @abstractmethod
    def path_for(self, filename: str) -> Path:
        """Absolute path of the archive on disk, whether or not it exists."""
        pass

    @abstractmethod
    def list_archives(self) -> List[str]:
        """Sorted filenames of every stored archive."""
        pass

    @abstractmethod
    def digest(self, filename: str) -> str:
        """SHA-1 hex digest of a stored archive."""
        pass
