"""
Index manager: regenerate or patch the RubyGems index from the package store.

Each rebuild writes a complete *generation* directory under
``<gems_directory>/index`` and then atomically repoints the ``current``
symlink at it. Readers resolve ``current`` once and read a single
generation, so they see either the old fragment set or the new one.

Incremental updates patch the previous generation (only new or modified
archives are opened). Any incremental failure is logged and followed by
exactly one force rebuild; a failing force rebuild raises IndexRebuildError.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import threading
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from gembox.data import index_files
from gembox.data.gem_archive import read_specification
from gembox.data.version_collection import VersionCollection
from gembox.domain.errors import GemFormatError, IndexRebuildError, MarshalError
from gembox.domain.models import GemSpecification, PackageVersion, RepositoryConfig
from gembox.storage.package_store import PackageStore

logger = logging.getLogger(__name__)

CURRENT_LINK = "current"
MANIFEST_FILE = "archives.json"
GENERATION_PREFIX = "gen-"
STAGING_PREFIX = ".staging-"


@dataclass
class IndexEntry:
    """One archive as recorded in a generation."""

    filename: str
    version: PackageVersion
    mtime_ns: int
    spec: Optional[GemSpecification] = None
    quick_source: Optional[Path] = None

    def to_manifest(self) -> dict:
        return {
            "name": self.version.name,
            "version": self.version.version,
            "platform": self.version.platform,
            "mtime_ns": self.mtime_ns,
        }


class IndexManager:
    """
    Builds the version index for a package store.

    ``rebuild`` is safe to call from several threads: calls are serialized,
    and a call whose changes are already covered by a rebuild that started
    after it was requested returns without doing any work.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        store: PackageStore,
        spec_reader: Callable[[Path], GemSpecification] = read_specification,
    ):
        self._config = config
        self._store = store
        self._read_spec = spec_reader
        self._root = config.index_directory

        self._rebuild_lock = threading.Lock()
        self._seq_lock = threading.Lock()
        self._requested = 0
        self._covered = 0

        self.force_count = 0
        self.incremental_count = 0
        self.last_rebuilt_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Rebuild entry points
    # ------------------------------------------------------------------

    def rebuild(self, force: bool = True) -> bool:
        """
        Refresh the index.

        Args:
            force: rebuild from a full scan. When False and incremental
                updates are enabled, patch the current generation instead.

        Returns:
            True if this call rebuilt the index, False if a concurrent
            rebuild already covered it.

        Raises:
            IndexRebuildError: if the force rebuild (or the fallback after a
                failed incremental update) fails.
        """
        with self._seq_lock:
            self._requested += 1
            ticket = self._requested

        with self._rebuild_lock:
            if self._covered >= ticket:
                logger.debug(f"Index rebuild request #{ticket} already covered")
                return False
            with self._seq_lock:
                started = self._requested

            if force or not self._config.incremental_updates:
                self._force_rebuild()
            else:
                try:
                    self._incremental_update()
                except Exception as e:
                    logger.error(
                        f"Incremental index update failed ({e.__class__.__name__}: {e}); "
                        f"falling back to a full rebuild",
                        exc_info=True,
                    )
                    self._force_rebuild()

            self._covered = started
            self.last_rebuilt_at = datetime.now(timezone.utc)
            return True

    def ensure_index(self) -> None:
        """Build the index if no generation exists yet."""
        current = self._root / CURRENT_LINK
        if not current.exists():
            logger.info("No index generation found; building one")
            self.rebuild(force=True)

    def _force_rebuild(self) -> None:
        self.force_count += 1
        try:
            entries: Dict[str, IndexEntry] = {}
            for filename in self._store.list_archives():
                entry = self._read_entry(filename)
                if entry is not None:
                    entries[filename] = entry
            self._publish(entries.values())
            logger.info(f"Rebuilt index with {len(entries)} gems")
        except IndexRebuildError:
            raise
        except Exception as e:
            logger.error(f"Full index rebuild failed: {e}", exc_info=True)
            raise IndexRebuildError(f"Index rebuild failed: {e}") from e

    def _incremental_update(self) -> None:
        self.incremental_count += 1
        current = self._current_generation()
        if current is None:
            raise IndexRebuildError("No existing index generation to update")

        manifest = self._read_manifest(current)
        indexed = set(index_files.read_fragment(current / index_files.fragment_filename(index_files.SPECS)))
        indexed |= index_files.read_fragment(
            current / index_files.fragment_filename(index_files.PRERELEASE_SPECS)
        )
        recorded = {
            PackageVersion(name=m["name"], version=m["version"], platform=m["platform"])
            for m in manifest.values()
        }
        if recorded != indexed:
            raise IndexRebuildError("Index fragments disagree with the archive manifest")

        entries: Dict[str, IndexEntry] = {}
        added = 0
        for filename in self._store.list_archives():
            path = self._store.path_for(filename)
            try:
                mtime_ns = path.stat().st_mtime_ns
            except FileNotFoundError:
                continue
            known = manifest.get(filename)
            if known is not None and known["mtime_ns"] == mtime_ns:
                version = PackageVersion(name=known["name"], version=known["version"], platform=known["platform"])
                quick = current / index_files.quick_spec_filename(version)
                if not quick.is_file():
                    raise IndexRebuildError(f"Quick gemspec missing for {version.full_name}")
                entries[filename] = IndexEntry(filename, version, mtime_ns, quick_source=quick)
                continue
            entry = self._read_entry(filename)
            if entry is not None:
                entries[filename] = entry
                added += 1

        removed = len(set(manifest) - set(entries))
        self._publish(entries.values())
        logger.info(f"Updated index incrementally: {added} new or changed, {removed} removed")

    # ------------------------------------------------------------------
    # Writing generations
    # ------------------------------------------------------------------

    def _read_entry(self, filename: str) -> Optional[IndexEntry]:
        path = self._store.path_for(filename)
        try:
            mtime_ns = path.stat().st_mtime_ns
            spec = self._read_spec(path)
        except FileNotFoundError:
            logger.debug(f"{filename} disappeared during indexing")
            return None
        except GemFormatError as e:
            logger.warning(f"Unable to process {filename}: {e}")
            return None
        return IndexEntry(filename, spec.to_package_version(), mtime_ns, spec=spec)

    def _publish(self, entries: Iterable[IndexEntry]) -> Path:
        entries = list(entries)
        self._root.mkdir(parents=True, exist_ok=True)
        token = f"{time.time_ns()}-{secrets.token_hex(4)}"
        staging = self._root / f"{STAGING_PREFIX}{token}"
        generation = self._root / f"{GENERATION_PREFIX}{token}"
        previous = self._current_generation()

        try:
            self._write_generation(staging, entries)
            os.rename(staging, generation)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        self._swap_current(generation)
        self._prune(keep={generation.name, previous.name if previous else None})
        return generation

    def _write_generation(self, target: Path, entries: List[IndexEntry]) -> None:
        quick_dir = target / index_files.QUICK_DIR
        quick_dir.mkdir(parents=True)

        versions = [e.version for e in entries]
        for fragment, members in index_files.split_fragments(versions).items():
            raw = index_files.encode_specs(members)
            (target / index_files.fragment_filename(fragment, compressed=False)).write_bytes(raw)
            (target / index_files.fragment_filename(fragment)).write_bytes(index_files.gzip_bytes(raw))

        for entry in entries:
            destination = target / index_files.quick_spec_filename(entry.version)
            if entry.spec is not None:
                destination.write_bytes(index_files.encode_quick_spec(entry.spec))
            elif entry.quick_source is not None:
                _link_or_copy(entry.quick_source, destination)

        if self._config.build_legacy:
            groups = index_files.split_fragments(versions)
            everything = sorted(set(versions))
            legacy = {
                index_files.LEGACY_QUICK_INDEX: index_files.encode_legacy_index(everything),
                index_files.LEGACY_LATEST_INDEX: index_files.encode_legacy_index(groups[index_files.LATEST_SPECS]),
            }
            for name, data in legacy.items():
                (target / name).write_bytes(data)
                (target / f"{name}.rz").write_bytes(zlib.compress(data))

        manifest = {e.filename: e.to_manifest() for e in entries}
        (target / MANIFEST_FILE).write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")

    def _swap_current(self, generation: Path) -> None:
        link = self._root / CURRENT_LINK
        tmp_link = self._root / f".{CURRENT_LINK}-{secrets.token_hex(4)}"
        os.symlink(generation.name, tmp_link)
        try:
            os.replace(tmp_link, link)
        except OSError:
            tmp_link.unlink(missing_ok=True)
            raise
        logger.debug(f"Index now served from {generation.name}")

    def _prune(self, keep: set) -> None:
        for path in self._root.iterdir():
            if path.name in keep or path.is_symlink():
                continue
            if path.name.startswith(GENERATION_PREFIX) or path.name.startswith(STAGING_PREFIX):
                shutil.rmtree(path, ignore_errors=True)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _current_generation(self) -> Optional[Path]:
        link = self._root / CURRENT_LINK
        if not link.exists():
            return None
        resolved = link.resolve()
        return resolved if resolved.is_dir() else None

    def current_dir(self) -> Optional[Path]:
        """
        Directory holding the live fragments.

        Falls back to fragments stored directly in the gems directory
        (layout of older servers) when no generation has been built yet.
        """
        generation = self._current_generation()
        if generation is not None:
            return generation
        legacy = self._config.gems_directory
        if (legacy / index_files.fragment_filename(index_files.SPECS)).is_file():
            return legacy
        return None

    def _read_manifest(self, generation: Path) -> Dict[str, dict]:
        path = generation / MANIFEST_FILE
        if not path.is_file():
            raise IndexRebuildError(f"Missing {MANIFEST_FILE} in {generation.name}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise IndexRebuildError(f"Corrupt {MANIFEST_FILE}: {e}") from e
        if not isinstance(data, dict):
            raise IndexRebuildError(f"Corrupt {MANIFEST_FILE}")
        return data

    def load_collection(self) -> VersionCollection:
        """
        Load the live version collection.

        Retried once if the generation was pruned while it was being read.
        """
        for _ in range(2):
            directory = self.current_dir()
            if directory is None:
                return VersionCollection()
            try:
                collection = VersionCollection.load(directory)
            except (OSError, MarshalError) as e:
                if directory.exists():
                    raise
                logger.debug(f"Generation {directory.name} pruned while reading: {e}")
                continue
            if directory.exists():
                return collection
        directory = self.current_dir()
        return VersionCollection.load(directory) if directory else VersionCollection()

    def fragment_path(self, relative: str) -> Optional[Path]:
        """
        Resolve a client-facing index file (e.g. ``specs.4.8.gz`` or
        ``quick/Marshal.4.8/foo-1.0.gemspec.rz``) inside the live generation.
        """
        directory = self.current_dir()
        if directory is None:
            return None
        base = directory.resolve()
        candidate = (base / relative).resolve()
        if base not in candidate.parents or not candidate.is_file():
            return None
        return candidate

    def spec_for(self, name: str, version: str, platform: str = "ruby") -> Optional[GemSpecification]:
        """Load the quick gemspec of one version, or None if unavailable."""
        pv = PackageVersion(name=name, version=version, platform=platform)
        path = self.fragment_path(index_files.quick_spec_filename(pv))
        if path is None:
            return None
        try:
            return index_files.decode_quick_spec(path.read_bytes())
        except (MarshalError, OSError) as e:
            logger.warning(f"Could not read quick gemspec for {pv.full_name}: {e}")
            return None


def _link_or_copy(source: Path, destination: Path) -> None:
    try:
        os.link(source, destination)
    except OSError:
        shutil.copy2(source, destination)
