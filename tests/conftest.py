import gzip
import io
import tarfile
from pathlib import Path
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from gembox.core.dependencies import get_repository
from gembox.domain.entities import Repository
from gembox.domain.models import RepositoryConfig

GEMSPEC_TEMPLATE = """--- !ruby/object:Gem::Specification
name: {name}
version: !ruby/object:Gem::Version
  version: {version}
platform: {platform}
authors:
- Jane Doe
autorequire:
bindir: bin
date: 2024-01-02 00:00:00.000000000 Z
dependencies:
- !ruby/object:Gem::Dependency
  name: rake
  requirement: !ruby/object:Gem::Requirement
    requirements:
    - - "~>"
      - !ruby/object:Gem::Version
        version: '13.0'
  type: :runtime
  prerelease: false
  version_requirements: !ruby/object:Gem::Requirement
    requirements:
    - - "~>"
      - !ruby/object:Gem::Version
        version: '13.0'
- !ruby/object:Gem::Dependency
  name: rspec
  requirement: !ruby/object:Gem::Requirement
    requirements:
    - - ">="
      - !ruby/object:Gem::Version
        version: '0'
  type: :development
  prerelease: false
email: jane@example.com
homepage: https://example.com/{name}
licenses:
- MIT
metadata: {{}}
required_ruby_version: !ruby/object:Gem::Requirement
  requirements:
  - - ">="
    - !ruby/object:Gem::Version
      version: '2.7'
required_rubygems_version: !ruby/object:Gem::Requirement
  requirements:
  - - ">="
    - !ruby/object:Gem::Version
      version: '0'
rubygems_version: 3.4.10
specification_version: 4
summary: {summary}
description: A gem used in tests.
"""


def _add_file(archive: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    archive.addfile(info, io.BytesIO(data))


def make_gem(
    name: str = "foo",
    version: str = "1.0",
    files: Optional[Dict[str, str]] = None,
    platform: str = "ruby",
    summary: Optional[str] = None,
) -> bytes:
    """Build a minimal .gem archive in memory."""
    if files is None:
        files = {"lib/%s.rb" % name: "module Foo\nend\n", "README.md": "# %s\n" % name}
    metadata = GEMSPEC_TEMPLATE.format(
        name=name,
        version=version,
        platform=platform,
        summary=summary or "The %s gem" % name,
    ).encode("utf-8")

    data_buf = io.BytesIO()
    with tarfile.open(fileobj=data_buf, mode="w:gz") as data:
        for path, text in files.items():
            _add_file(data, path, text.encode("utf-8"))

    gem_buf = io.BytesIO()
    with tarfile.open(fileobj=gem_buf, mode="w") as gem:
        _add_file(gem, "metadata.gz", gzip.compress(metadata, mtime=0))
        _add_file(gem, "data.tar.gz", data_buf.getvalue())
    return gem_buf.getvalue()


@pytest.fixture
def config(tmp_path: Path) -> RepositoryConfig:
    return RepositoryConfig(
        gems_directory=tmp_path / "gems",
        docs_directory=tmp_path / "docs",
    )


@pytest.fixture
def repository(config: RepositoryConfig) -> Repository:
    return Repository(config)


@pytest.fixture
def client(repository: Repository):
    from gembox.main import app

    app.dependency_overrides[get_repository] = lambda: repository
    yield TestClient(app)
    app.dependency_overrides.clear()
