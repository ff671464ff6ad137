"""
Read RubyGems package archives.

A ``.gem`` file is an uncompressed tar containing:
- metadata.gz      gzipped YAML dump of the Gem::Specification
- data.tar.gz      the gem's files
- checksums.yaml.gz (ignored here)
"""
from __future__ import annotations

import base64
import gzip
import io
import logging
import re
import shutil
import tarfile
from datetime import date, datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Tuple, Union

import yaml

from gembox.domain.errors import GemFormatError
from gembox.domain.models import RUBY_PLATFORM, GemDependency, GemSpecification
from gembox.domain.versions import is_valid_version

logger = logging.getLogger(__name__)

# Gem::Specification::VALID_NAME_PATTERN
VALID_NAME_RE = re.compile(r"\A[a-zA-Z0-9._-]+\Z")

GemSource = Union[Path, bytes]


class GemspecLoader(yaml.SafeLoader):
    """SafeLoader that understands the ``!ruby/...`` tags written by Psych."""


def _construct_ruby(loader: GemspecLoader, tag_suffix: str, node: yaml.Node) -> Any:
    if tag_suffix == "object:Gem::Version" and isinstance(node, yaml.MappingNode):
        # Keep the raw scalar so "1.10" is not read back as the float 1.1.
        for key_node, value_node in node.value:
            if loader.construct_scalar(key_node) == "version" and isinstance(value_node, yaml.ScalarNode):
                return {"version": str(value_node.value)}
    if isinstance(node, yaml.MappingNode):
        return loader.construct_mapping(node, deep=True)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_scalar(node)


def _construct_binary(loader: GemspecLoader, node: yaml.Node) -> str:
    raw = base64.b64decode(loader.construct_scalar(node))
    return raw.decode("utf-8", errors="replace")


GemspecLoader.add_multi_constructor("!ruby/", _construct_ruby)
GemspecLoader.add_constructor("!binary", _construct_binary)


def _open_outer(source: GemSource) -> tarfile.TarFile:
    try:
        if isinstance(source, (bytes, bytearray)):
            return tarfile.open(fileobj=io.BytesIO(bytes(source)), mode="r:")
        return tarfile.open(str(source), mode="r:")
    except (tarfile.TarError, OSError) as e:
        raise GemFormatError(f"Not a gem archive: {e}") from e


def _read_member(archive: tarfile.TarFile, name: str) -> bytes:
    try:
        member = archive.getmember(name)
    except KeyError:
        raise GemFormatError(f"Gem archive has no {name}") from None
    handle = archive.extractfile(member)
    if handle is None:
        raise GemFormatError(f"{name} is not a regular file")
    with handle:
        return handle.read()


# ---------------------------------------------------------------------------
# Specification parsing
# ---------------------------------------------------------------------------


def _version_string(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("version")
    return "" if value is None else str(value)


def _requirement_pairs(value: Any) -> List[Tuple[str, str]]:
    if isinstance(value, dict):
        value = value.get("requirements") or value.get("version_requirements") or []
    pairs: List[Tuple[str, str]] = []
    for item in value or []:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            pairs.append((str(item[0]), _version_string(item[1])))
    return pairs or [(">=", "0")]


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


def _dependency(raw: Any) -> Optional[GemDependency]:
    if not isinstance(raw, dict) or not raw.get("name"):
        return None
    dep_type = str(raw.get("type") or "runtime").lstrip(":")
    return GemDependency(
        name=str(raw["name"]),
        requirements=_requirement_pairs(raw.get("requirement") or raw.get("version_requirements")),
        type="development" if dep_type == "development" else "runtime",
    )


def parse_specification(text: Union[str, bytes]) -> GemSpecification:
    """Build a GemSpecification from the YAML found in ``metadata.gz``."""
    try:
        raw = yaml.load(text, Loader=GemspecLoader)
    except yaml.YAMLError as e:
        raise GemFormatError(f"Invalid gem metadata: {e}") from e

    if not isinstance(raw, dict):
        raise GemFormatError("Gem metadata is not a specification")

    name = raw.get("name")
    version = _version_string(raw.get("version"))
    if not name or not is_valid_version(version):
        raise GemFormatError(f"Gem metadata lacks a valid name/version ({name!r}, {version!r})")

    platform = raw.get("platform") or RUBY_PLATFORM
    if isinstance(platform, dict):
        parts = [platform.get("cpu"), platform.get("os"), platform.get("version")]
        platform = "-".join(str(p) for p in parts if p) or RUBY_PLATFORM
    if not VALID_NAME_RE.match(str(name)) or not VALID_NAME_RE.match(str(platform)):
        raise GemFormatError(f"Invalid gem name or platform ({name!r}, {platform!r})")

    metadata = raw.get("metadata") or {}
    return GemSpecification(
        name=str(name),
        version=version,
        platform=str(platform),
        summary=raw.get("summary"),
        description=raw.get("description"),
        authors=_string_list(raw.get("authors")),
        email=_string_list(raw.get("email")),
        homepage=raw.get("homepage"),
        licenses=_string_list(raw.get("licenses")),
        date=_as_datetime(raw.get("date")),
        dependencies=[d for d in (_dependency(x) for x in raw.get("dependencies") or []) if d],
        required_ruby_version=_requirement_pairs(raw.get("required_ruby_version")),
        required_rubygems_version=_requirement_pairs(raw.get("required_rubygems_version")),
        rubygems_version=str(raw.get("rubygems_version") or "3.0.0"),
        specification_version=int(raw.get("specification_version") or 4),
        metadata={str(k): str(v) for k, v in metadata.items()} if isinstance(metadata, dict) else {},
    )


def read_specification(source: GemSource) -> GemSpecification:
    """
    Read the specification of a gem given its path or raw bytes.

    Raises:
        GemFormatError: if the archive or its metadata cannot be read.
    """
    with _open_outer(source) as archive:
        compressed = _read_member(archive, "metadata.gz")
    try:
        text = gzip.decompress(compressed)
    except (OSError, EOFError) as e:
        raise GemFormatError(f"Corrupt metadata.gz: {e}") from e
    return parse_specification(text)


# ---------------------------------------------------------------------------
# Data extraction
# ---------------------------------------------------------------------------


def _safe_target(destination: Path, member_name: str) -> Path:
    path = PurePosixPath(member_name)
    if path.is_absolute() or ".." in path.parts:
        raise GemFormatError(f"Refusing to extract unsafe path {member_name!r}")
    target = (destination / Path(*path.parts)).resolve()
    if destination.resolve() not in target.parents and target != destination.resolve():
        raise GemFormatError(f"Refusing to extract unsafe path {member_name!r}")
    return target


def extract_data(source: GemSource, destination: Path) -> List[Path]:
    """
    Unpack ``data.tar.gz`` of a gem into ``destination``.

    Only regular files and directories are written; links are skipped.

    Returns:
        Paths of the extracted files, relative to ``destination``.
    """
    destination.mkdir(parents=True, exist_ok=True)
    with _open_outer(source) as archive:
        payload = _read_member(archive, "data.tar.gz")

    extracted: List[Path] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as data:
            for member in data:
                target = _safe_target(destination, member.name)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    logger.debug(f"Skipping non-regular member {member.name}")
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                handle = data.extractfile(member)
                if handle is None:
                    continue
                with handle, target.open("wb") as out:
                    shutil.copyfileobj(handle, out)
                extracted.append(target.relative_to(destination.resolve()))
    except (tarfile.TarError, OSError, EOFError) as e:
        raise GemFormatError(f"Corrupt data.tar.gz: {e}") from e

    logger.debug(f"Extracted {len(extracted)} files into {destination}")
    return extracted

