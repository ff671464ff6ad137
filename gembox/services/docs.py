"""
Lazily generated per-gem documentation sites.

A DocSet is built in two isolated places, a temporary workspace holding
the extracted gem and a staging directory next to the final location, and
is then renamed into ``<docs_directory>/<full_name>``. The rename is atomic,
so an existing DocSet directory is always complete.
"""
from __future__ import annotations

import contextlib
import logging
import os
import secrets
import shutil
import subprocess
import threading
import weakref
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from gembox.data.gem_archive import extract_data, read_specification
from gembox.domain.errors import DocGenerationError, GemFormatError, ValidationError
from gembox.domain.models import GemSpecification, RepositoryConfig
from gembox.storage.package_store import PackageStore

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "templates"
MAX_RENDERED_FILE_BYTES = 512 * 1024
README_SUFFIXES = ("", ".md", ".markdown", ".rdoc", ".txt")


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


class DocBuilder(ABC):
    """Turns an extracted gem into a static documentation site."""

    @abstractmethod
    def build(self, source: Path, output: Path, spec: Optional[GemSpecification]) -> None:
        """Write the site for ``source`` into the (not yet existing) ``output`` directory."""
        pass


class HtmlDocBuilder(DocBuilder):
    """
    Built-in builder rendering Jinja2 pages: an overview with the gem's
    metadata and README, and one page per readable source file.
    """

    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )

    @staticmethod
    def _read_text(path: Path) -> Optional[str]:
        try:
            if path.stat().st_size > MAX_RENDERED_FILE_BYTES:
                return None
            return path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    @staticmethod
    def _find_readme(source: Path) -> Optional[Path]:
        candidates = sorted(
            p for p in source.iterdir()
            if p.is_file() and p.stem.lower() == "readme" and p.suffix.lower() in README_SUFFIXES
        )
        return candidates[0] if candidates else None

    def build(self, source: Path, output: Path, spec: Optional[GemSpecification]) -> None:
        output.mkdir(parents=True)
        files: List[Dict[str, Optional[str]]] = []
        file_template = self.env.get_template("docs/file.html")

        for path in sorted(p for p in source.rglob("*") if p.is_file()):
            rel = PurePosixPath(path.relative_to(source).as_posix())
            text = self._read_text(path)
            page = None
            if text is not None:
                page = f"files/{rel}.html"
                target = output / "files" / f"{rel}.html"
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(
                    file_template.render(
                        spec=spec,
                        path=str(rel),
                        content=text,
                        root="../" * len(rel.parts),
                    ),
                    encoding="utf-8",
                )
            files.append({"path": str(rel), "page": page})

        readme_path = self._find_readme(source) if source.is_dir() else None
        readme = self._read_text(readme_path) if readme_path else None

        (output / "index.html").write_text(
            self.env.get_template("docs/index.html").render(
                spec=spec,
                files=files,
                readme=readme,
                readme_name=readme_path.name if readme_path else None,
            ),
            encoding="utf-8",
        )


class CommandDocBuilder(DocBuilder):
    """
    Runs an external documentation tool inside the extracted gem, e.g.
    ``["yard", "doc", "-o", "{output}"]``. ``{output}`` and ``{source}`` are
    substituted in every argument.
    """

    def __init__(self, argv: List[str], timeout: float):
        if not argv:
            raise ValueError("Documentation command must not be empty")
        self.argv = list(argv)
        self.timeout = timeout

    def build(self, source: Path, output: Path, spec: Optional[GemSpecification]) -> None:
        argv = [a.replace("{output}", str(output)).replace("{source}", str(source)) for a in self.argv]
        logger.debug(f"Running documentation command: {argv}")
        try:
            result = subprocess.run(
                argv,
                cwd=str(source),
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise DocGenerationError(
                f"Documentation build timed out after {self.timeout:g}s"
            ) from e
        except OSError as e:
            raise DocGenerationError(f"Cannot run documentation command {argv[0]!r}: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()[-2000:]
            raise DocGenerationError(
                f"Documentation command exited with status {result.returncode}: {stderr}"
            )
        if not output.is_dir():
            raise DocGenerationError("Documentation command produced no output")


def builder_for(config: RepositoryConfig) -> DocBuilder:
    if config.doc_command:
        return CommandDocBuilder(config.doc_command, config.doc_build_timeout_seconds)
    return HtmlDocBuilder()


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class DocGenerator:
    """
    Builds a gem's DocSet the first time it is requested.

    Concurrent requests for the same gem in this process are collapsed by a
    per-gem claim; across processes each build is isolated and publishing
    is an atomic rename, so duplicated work never corrupts the output.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        store: PackageStore,
        builder: Optional[DocBuilder] = None,
    ):
        self._config = config
        self._store = store
        self._builder = builder or builder_for(config)
        self._docs_dir = config.docs_directory
        self._tmp_dir = config.workspace_directory

        # Entries vanish once no request holds the lock.
        self._claims: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._claims_lock = threading.Lock()
        self.build_count = 0

    def docs_path(self, name: str) -> Path:
        """
        Directory of the DocSet for ``name`` (a gem full name like "foo-1.0").

        Raises:
            ValidationError: if ``name`` is not a plain directory name.
        """
        if not name or name.startswith(".") or "/" in name or "\\" in name or name != os.path.basename(name):
            raise ValidationError(f"Invalid gem name: {name!r}")
        return self._docs_dir / name

    def is_generated(self, name: str) -> bool:
        return self.docs_path(name).is_dir()

    def _claim(self, name: str) -> threading.Lock:
        with self._claims_lock:
            return self._claims.setdefault(name, threading.Lock())

    @contextlib.contextmanager
    def _workspace(self) -> Iterator[Path]:
        workspace = self._tmp_dir / f"gemdoc_{secrets.token_hex(32)}"
        workspace.mkdir(parents=True)
        try:
            yield workspace
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    def generate_if_missing(self, name: str) -> bool:
        """
        Make sure the DocSet for ``name`` exists.

        Returns:
            True if this call built the docs, False if they already existed.

        Raises:
            DocGenerationError: unknown gem, unreadable archive or failed build.
        """
        target = self.docs_path(name)
        if target.is_dir():
            return False
        with self._claim(name):
            if target.is_dir():
                return False
            self._generate(name, target)
            return True

    def _generate(self, name: str, target: Path) -> None:
        archive = self._store.path_for(f"{name}.gem")
        if not archive.is_file():
            raise DocGenerationError(f"No gem named {name}")

        self._docs_dir.mkdir(parents=True, exist_ok=True)
        staging = self._docs_dir / f".{name}.{secrets.token_hex(8)}.tmp"
        logger.info(f"Generating documentation for {name}")
        try:
            with self._workspace() as workspace:
                source = workspace / name
                try:
                    spec = read_specification(archive)
                    extract_data(archive, source)
                except (GemFormatError, OSError) as e:
                    raise DocGenerationError(f"Cannot extract {name}: {e}") from e

                try:
                    self._builder.build(source, staging, spec)
                except DocGenerationError:
                    raise
                except Exception as e:
                    logger.error(f"Documentation build for {name} failed: {e}", exc_info=True)
                    raise DocGenerationError(f"Documentation build for {name} failed: {e}") from e

            self._publish(staging, target)
            self.build_count += 1
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _publish(self, staging: Path, target: Path) -> None:
        try:
            os.rename(staging, target)
        except OSError as e:
            if target.is_dir():
                # A concurrent build of the same archive got there first.
                logger.info(f"Documentation for {target.name} was published concurrently; keeping it")
                return
            raise DocGenerationError(f"Cannot publish documentation for {target.name}: {e}") from e
        logger.info(f"Documentation for {target.name} written to {target}")
