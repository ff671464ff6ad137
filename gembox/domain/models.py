"""
Pydantic models for the gem repository.

This module defines the data models used throughout the application:
- Repository configuration (directories, replace/reindex policy, bounds)
- Package versions as listed in the index fragments
- Gem specifications parsed from uploaded archives
- Results reported by the package store

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field

from gembox.domain.versions import GemVersion, version_key

RUBY_PLATFORM = "ruby"


# ---------------------------------------------------------------------------
# Repository Configuration
# ---------------------------------------------------------------------------


class RepositoryConfig(BaseModel):
    """
    Configuration handed to every core component at construction time.

    Persisted as ``repository.json`` in the data directory; missing fields are
    filled with the defaults below.
    """

    gems_directory: Path = Field(
        description="Root of the archive store; gems live in '<gems_directory>/gems'.",
    )
    docs_directory: Path = Field(
        description="Directory holding one generated documentation tree per gem.",
    )
    tmp_directory: Optional[Path] = Field(
        default=None,
        description="Where temporary doc workspaces are created. Defaults to '<gems_directory>/tmp'.",
    )
    allow_replace: bool = Field(
        default=False,
        description="If True, uploading an existing filename overwrites it.",
    )
    incremental_updates: bool = Field(
        default=False,
        description="If True, uploads patch the index instead of rebuilding it from scratch.",
    )
    build_legacy: bool = Field(
        default=False,
        description="If True, also write the plain-text quick/index files used by old clients.",
    )
    max_upload_bytes: int = Field(
        default=64 * 1024 * 1024,
        description="Largest accepted archive, in bytes.",
    )
    doc_build_timeout_seconds: float = Field(
        default=120.0,
        description="Upper bound for a single documentation build.",
    )
    doc_command: Optional[List[str]] = Field(
        default=None,
        description=(
            "External documentation command run inside the extracted gem, e.g. "
            "['yard', 'doc', '-o', '{output}']. When unset, the built-in HTML builder is used."
        ),
    )

    @property
    def archive_directory(self) -> Path:
        return self.gems_directory / "gems"

    @property
    def index_directory(self) -> Path:
        return self.gems_directory / "index"

    @property
    def workspace_directory(self) -> Path:
        return self.tmp_directory or (self.gems_directory / "tmp")


# ---------------------------------------------------------------------------
# Index Models
# ---------------------------------------------------------------------------


class PackageVersion(BaseModel):
    """
    One (name, version, platform) entry of the version index.

    Equality and hashing use the three raw strings; ordering is by name, then
    RubyGems version semantics, then platform.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    platform: str = RUBY_PLATFORM

    @property
    def gem_version(self) -> GemVersion:
        return GemVersion(self.version)

    @property
    def prerelease(self) -> bool:
        try:
            return self.gem_version.prerelease
        except ValueError:
            return False

    @property
    def full_name(self) -> str:
        if self.platform and self.platform != RUBY_PLATFORM:
            return f"{self.name}-{self.version}-{self.platform}"
        return f"{self.name}-{self.version}"

    @property
    def file_name(self) -> str:
        return f"{self.full_name}.gem"

    def sort_key(self) -> tuple:
        return (self.name, version_key(self.version), self.platform)

    def __lt__(self, other: "PackageVersion") -> bool:
        if not isinstance(other, PackageVersion):
            return NotImplemented
        return self.sort_key() < other.sort_key()


# ---------------------------------------------------------------------------
# Gem Specification Models
# ---------------------------------------------------------------------------


class GemDependency(BaseModel):
    """A runtime or development dependency declared by a gem."""

    name: str
    requirements: List[Tuple[str, str]] = Field(
        default_factory=lambda: [(">=", "0")],
        description="Pairs of (operator, version), e.g. [('~>', '1.2')].",
    )
    type: Literal["runtime", "development"] = "runtime"

    def requirement_string(self) -> str:
        return ", ".join(f"{op} {ver}" for op, ver in self.requirements)


class GemSpecification(BaseModel):
    """
    Metadata of a gem, as parsed from the archive's ``metadata.gz``.
    """

    name: str
    version: str
    platform: str = RUBY_PLATFORM
    summary: Optional[str] = None
    description: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    email: List[str] = Field(default_factory=list)
    homepage: Optional[str] = None
    licenses: List[str] = Field(default_factory=list)
    date: Optional[datetime] = None
    dependencies: List[GemDependency] = Field(default_factory=list)
    required_ruby_version: List[Tuple[str, str]] = Field(default_factory=lambda: [(">=", "0")])
    required_rubygems_version: List[Tuple[str, str]] = Field(default_factory=lambda: [(">=", "0")])
    rubygems_version: str = "3.0.0"
    specification_version: int = 4
    metadata: Dict[str, str] = Field(default_factory=dict)

    def to_package_version(self) -> PackageVersion:
        return PackageVersion(name=self.name, version=self.version, platform=self.platform)

    @property
    def full_name(self) -> str:
        return self.to_package_version().full_name

    @property
    def runtime_dependencies(self) -> List[GemDependency]:
        return [d for d in self.dependencies if d.type == "runtime"]


# ---------------------------------------------------------------------------
# Store Results
# ---------------------------------------------------------------------------


class PutStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    REPLACED = "replaced"


class PutResult(BaseModel):
    filename: str
    status: PutStatus
    sha1: str


class StoreEvent(BaseModel):
    """Change notification emitted by the package store."""

    action: Literal["put", "delete"]
    filename: str
