import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import List

from gembox.domain.errors import ConflictError, StorageError, ValidationError
from gembox.domain.models import PutResult, PutStatus, RepositoryConfig, StoreEvent
from gembox.storage.package_store import PackageStore

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".gem"


def sha1_bytes(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


def sha1_file(path: Path) -> str:
    hasher = hashlib.sha1()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def normalize_filename(filename: str) -> str:
    """
    Reduce an uploaded filename to a safe basename ending in ``.gem``.
    """
    name = os.path.basename((filename or "").replace("\\", "/")).strip()
    if not name or name.startswith(".") or not name.endswith(ARCHIVE_SUFFIX) or name == ARCHIVE_SUFFIX:
        raise ValidationError(f"Invalid gem filename: {filename!r}")
    return name


class FileSystemPackageStore(PackageStore):
    """
    Archives stored as plain files in ``<gems_directory>/gems``.

    Every write goes to a temporary file in the same directory first and is
    then moved into place, so readers see either the old file or the new one.
    """

    def __init__(self, config: RepositoryConfig):
        super().__init__()
        self._config = config
        self._dir = config.archive_directory

    @property
    def directory(self) -> Path:
        return self._dir

    def _ensure_writable(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Please ensure {self._dir.resolve()} is writable by the gembox web server."
            ) from e
        if not os.access(self._dir, os.W_OK):
            raise StorageError(
                f"Please ensure {self._dir.resolve()} is writable by the gembox web server."
            )

    def _write_temp(self, name: str, content: bytes) -> Path:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", suffix=".tmp", dir=self._dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {name}: {e}") from e
        return tmp_path

    def _link_exclusive(self, tmp_path: Path, target: Path) -> bool:
        """
        Publish ``tmp_path`` at ``target`` only if nothing is there yet.

        Returns False when the target already exists.
        """
        try:
            os.link(tmp_path, target)
            return True
        except FileExistsError:
            return False
        except OSError:
            # Filesystems without hard links: best effort check-then-rename.
            if target.exists():
                return False
            os.replace(tmp_path, target)
            return True

    def put(self, filename: str, content: bytes) -> PutResult:
        name = normalize_filename(filename)
        if content is None or len(content) == 0:
            raise ValidationError("No file selected")
        if len(content) > self._config.max_upload_bytes:
            raise ValidationError(
                f"Gem is larger than the {self._config.max_upload_bytes} byte upload limit"
            )
        self._ensure_writable()

        target = self._dir / name
        incoming = sha1_bytes(content)
        tmp_path = self._write_temp(name, content)
        try:
            if self._config.allow_replace:
                replaced = target.exists()
                os.replace(tmp_path, target)
                status = PutStatus.REPLACED if replaced else PutStatus.CREATED
            elif self._link_exclusive(tmp_path, target):
                status = PutStatus.CREATED
            else:
                existing = sha1_file(target)
                if existing != incoming:
                    logger.info(f"Rejecting upload of {name}: different content already stored")
                    raise ConflictError(name)
                logger.info(f"Ignoring upload of {name}: identical content already stored")
                return PutResult(filename=name, status=PutStatus.DUPLICATE, sha1=incoming)
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.info(f"Stored {name} ({status.value}, sha1={incoming})")
        self._notify(StoreEvent(action="put", filename=name))
        return PutResult(filename=name, status=status, sha1=incoming)

    def delete(self, filename: str) -> bool:
        name = normalize_filename(filename)
        target = self._dir / name
        try:
            target.unlink()
        except FileNotFoundError:
            logger.debug(f"Delete of {name}: nothing to remove")
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {name}: {e}") from e

        logger.info(f"Deleted {name}")
        self._notify(StoreEvent(action="delete", filename=name))
        return True

    def get(self, filename: str) -> bytes:
        return self.path_for(filename).read_bytes()

    def exists(self, filename: str) -> bool:
        return self.path_for(filename).is_file()

    def path_for(self, filename: str) -> Path:
        return (self._dir / normalize_filename(filename)).resolve()

    def list_archives(self) -> List[str]:
        if not self._dir.is_dir():
            return []
        return sorted(
            p.name
            for p in self._dir.iterdir()
            if p.is_file() and p.name.endswith(ARCHIVE_SUFFIX) and not p.name.startswith(".")
        )

    def digest(self, filename: str) -> str:
        return sha1_file(self.path_for(filename))
