from typing import List, Optional, Set, Tuple
import logging
from pathlib import Path

from gembox.data.gem_archive import read_specification
from gembox.data.version_collection import VersionCollection
from gembox.domain.errors import IndexRebuildError, ValidationError
from gembox.domain.models import (
    GemSpecification,
    PackageVersion,
    PutResult,
    RepositoryConfig,
    StoreEvent,
)
from gembox.services.docs import DocGenerator
from gembox.services.indexer import IndexManager
from gembox.storage.file_store import FileSystemPackageStore, normalize_filename
from gembox.storage.package_store import PackageStore

logger = logging.getLogger(__name__)


class Repository:
    """
    Entry point used by the HTTP layer.

    Owns the package store, the index manager and the doc generator, all
    built from the same explicit configuration. Store changes trigger index
    rebuilds: incremental for uploads (when enabled), full for deletions.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        store: Optional[PackageStore] = None,
        indexer: Optional[IndexManager] = None,
        docs: Optional[DocGenerator] = None,
    ):
        self.config = config
        self.store = store or FileSystemPackageStore(config)
        self.indexer = indexer or IndexManager(config, self.store)
        self.docs = docs or DocGenerator(config, self.store)
        self.store.add_listener(self._on_store_change)

    def _on_store_change(self, event: StoreEvent) -> None:
        try:
            self.indexer.rebuild(force=event.action == "delete")
        except IndexRebuildError as e:
            raise IndexRebuildError(
                f"{event.filename} was {'stored' if event.action == 'put' else 'deleted'}, "
                f"but the index refresh failed: {e}",
                stored=True,
            ) from e

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upload(self, filename: str, content: bytes) -> PutResult:
        """
        Validate and store a gem.

        Raises:
            ValidationError / GemFormatError: bad filename or unreadable gem.
            ConflictError: different gem already stored under that name.
            StorageError: archive directory not writable.
            IndexRebuildError: stored, but the index could not be refreshed.
        """
        normalize_filename(filename)
        if not content:
            raise ValidationError("No file selected")
        if len(content) > self.config.max_upload_bytes:
            raise ValidationError(f"Gem is larger than the {self.config.max_upload_bytes} byte upload limit")
        spec = read_specification(content)
        # Stored under the name clients derive from the gemspec, not the uploaded one.
        name = spec.to_package_version().file_name
        logger.info(f"Uploading {filename} as {name} ({len(content)} bytes)")
        return self.store.put(name, content)

    def delete(self, filename: str) -> bool:
        """
        Remove a gem and force an index rebuild.

        The rebuild also runs when there was nothing to remove, so an index
        entry whose archive vanished from disk is dropped.
        """
        removed = self.store.delete(filename)
        if not removed:
            self.indexer.rebuild(force=True)
        return removed

    def reindex(self) -> None:
        self.indexer.rebuild(force=True)

    def ensure_index(self) -> None:
        self.indexer.ensure_index()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load_gems(self) -> VersionCollection:
        return self.indexer.load_collection()

    @staticmethod
    def index_gems(gems: VersionCollection) -> Set[str]:
        return gems.group_index()

    def spec_for(self, version: PackageVersion) -> Optional[GemSpecification]:
        return self.indexer.spec_for(version.name, version.version, version.platform)

    def listing(self, gems: VersionCollection) -> List[Tuple[str, List[PackageVersion], Optional[GemSpecification]]]:
        """(name, versions newest first, spec of the newest) for each gem."""
        return [(name, versions, self.spec_for(versions[0])) for name, versions in gems.by_name()]

    def docs_file(self, name: str, rest_path: str) -> Path:
        """
        Generate the DocSet for ``name`` if needed and resolve a file in it.

        Raises:
            ValidationError: ``name`` is not a plain directory name.
            DocGenerationError: the docs could not be built.
            FileNotFoundError: no such file inside the DocSet.
        """
        if not self.docs.is_generated(name) and not self.store.exists(f"{name}.gem"):
            raise FileNotFoundError(name)
        self.docs.generate_if_missing(name)
        base = self.docs.docs_path(name).resolve()
        target = (base / (rest_path or "index.html")).resolve()
        if target != base and base not in target.parents:
            raise FileNotFoundError(rest_path)
        if target.is_dir():
            target = target / "index.html"
        if not target.is_file():
            raise FileNotFoundError(rest_path)
        return target
