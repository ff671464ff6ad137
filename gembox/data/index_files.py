"""
On-disk formats of the RubyGems index.

Fragment files, relative to an index generation directory:

    specs.4.8[.gz]              every release version
    latest_specs.4.8[.gz]       newest release version per (name, platform)
    prerelease_specs.4.8[.gz]   every prerelease version
    quick/Marshal.4.8/<full_name>.gemspec.rz

Spec fragments are Marshal arrays of ``[name, Gem::Version, platform]``;
quick gemspecs are zlib-deflated Marshal dumps of ``Gem::Specification``.
These bytes are read by ``gem`` and ``bundler`` and must stay compatible.
"""
from __future__ import annotations

import gzip
import struct
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from gembox.data import marshal
from gembox.data.marshal import RubyObject, Symbol, UserDump, UserMarshal
from gembox.domain.errors import MarshalError
from gembox.domain.models import RUBY_PLATFORM, GemDependency, GemSpecification, PackageVersion
from gembox.domain.versions import version_key

SPECS = "specs"
LATEST_SPECS = "latest_specs"
PRERELEASE_SPECS = "prerelease_specs"

# Fragments unioned into the version collection, in load order.
COLLECTION_FRAGMENTS = (SPECS, PRERELEASE_SPECS)
ALL_FRAGMENTS = (SPECS, LATEST_SPECS, PRERELEASE_SPECS)

QUICK_DIR = f"quick/Marshal.{marshal.MARSHAL_VERSION}"
LEGACY_QUICK_INDEX = "quick/index"
LEGACY_LATEST_INDEX = "quick/latest_index"


def fragment_filename(fragment: str, compressed: bool = True) -> str:
    name = f"{fragment}.{marshal.MARSHAL_VERSION}"
    return f"{name}.gz" if compressed else name


def quick_spec_filename(version: PackageVersion) -> str:
    return f"{QUICK_DIR}/{version.full_name}.gemspec.rz"


def gzip_bytes(data: bytes) -> bytes:
    # mtime=0 keeps the output identical for identical input.
    return gzip.compress(data, mtime=0)


# ---------------------------------------------------------------------------
# Spec fragments
# ---------------------------------------------------------------------------


def split_fragments(versions: Iterable[PackageVersion]) -> Dict[str, List[PackageVersion]]:
    """
    Partition versions into the three spec fragments, each sorted.
    """
    release: List[PackageVersion] = []
    prerelease: List[PackageVersion] = []
    for v in versions:
        (prerelease if v.prerelease else release).append(v)

    latest: Dict[Tuple[str, str], PackageVersion] = {}
    for v in release:
        key = (v.name, v.platform)
        current = latest.get(key)
        if current is None or version_key(current.version) < version_key(v.version):
            latest[key] = v

    return {
        SPECS: sorted(set(release)),
        LATEST_SPECS: sorted(latest.values()),
        PRERELEASE_SPECS: sorted(set(prerelease)),
    }


def encode_specs(versions: Iterable[PackageVersion]) -> bytes:
    """Marshal a spec fragment (uncompressed)."""
    return marshal.dumps(
        [[v.name, marshal.gem_version(v.version), v.platform or RUBY_PLATFORM] for v in versions]
    )


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, UserMarshal) and value.class_name == "Gem::Version":
        data = value.data
        return _text(data[0] if isinstance(data, list) and data else data)
    if isinstance(value, RubyObject) and value.class_name == "Gem::Platform":
        parts = [value.ivars.get(k) for k in ("@cpu", "@os", "@version")]
        return "-".join(_text(p) for p in parts if p) or RUBY_PLATFORM
    if value is None:
        return ""
    return str(value)


def decode_specs(data: bytes) -> Set[PackageVersion]:
    """
    Unmarshal a spec fragment (uncompressed) into a set of versions.

    Raises:
        MarshalError: if the bytes are not a spec fragment.
    """
    entries = marshal.loads(data)
    if not isinstance(entries, list):
        raise MarshalError("Spec fragment is not an array")
    result: Set[PackageVersion] = set()
    for entry in entries:
        if not isinstance(entry, list) or len(entry) != 3:
            raise MarshalError(f"Malformed spec entry {entry!r}")
        name, version, platform = entry
        result.add(
            PackageVersion(
                name=_text(name),
                version=_text(version),
                platform=_text(platform) or RUBY_PLATFORM,
            )
        )
    return result


def read_fragment(path: Path) -> Set[PackageVersion]:
    """
    Read a ``.gz`` (or plain) spec fragment from disk.

    A missing file is an empty fragment.
    """
    if not path.is_file():
        return set()
    raw = path.read_bytes()
    if path.suffix == ".gz":
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError) as e:
            raise MarshalError(f"Corrupt gzip in {path.name}: {e}") from e
    return decode_specs(raw)


# ---------------------------------------------------------------------------
# Quick gemspecs
# ---------------------------------------------------------------------------


def _ruby_time(value: Optional[datetime]) -> UserDump:
    value = (value or datetime(1980, 1, 2, tzinfo=timezone.utc)).astimezone(timezone.utc)
    p = (
        1 << 31
        | 1 << 30
        | (value.year - 1900) << 14
        | (value.month - 1) << 10
        | value.day << 5
        | value.hour
    )
    s = value.minute << 26 | value.second << 20 | value.microsecond
    return UserDump("Time", struct.pack("<II", p, s))


def _from_ruby_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, UserDump) or value.class_name != "Time" or len(value.data) < 8:
        return None
    p, s = struct.unpack("<II", value.data[:8])
    if not p & (1 << 31):
        return datetime.fromtimestamp(p, tz=timezone.utc)
    return datetime(
        1900 + ((p >> 14) & 0xFFFF),
        ((p >> 10) & 0xF) + 1,
        (p >> 5) & 0x1F,
        p & 0x1F,
        (s >> 26) & 0x3F,
        (s >> 20) & 0x3F,
        s & 0xFFFFF,
        tzinfo=timezone.utc,
    )


def _dependency_object(dep: GemDependency) -> RubyObject:
    return RubyObject(
        "Gem::Dependency",
        {
            "@name": dep.name,
            "@requirement": marshal.gem_requirement(dep.requirements),
            "@type": Symbol(dep.type),
            "@prerelease": False,
        },
    )


def _requirement_pairs(value: Any) -> List[Tuple[str, str]]:
    if isinstance(value, UserMarshal) and isinstance(value.data, list) and value.data:
        pairs = value.data[0] or []
        return [(_text(op), _text(ver)) for op, ver in pairs]
    return [(">=", "0")]


def encode_quick_spec(spec: GemSpecification) -> bytes:
    """Deflated ``Marshal.dump(spec)`` as served from quick/Marshal.4.8."""
    fields = [
        spec.rubygems_version,
        spec.specification_version,
        spec.name,
        marshal.gem_version(spec.version),
        _ruby_time(spec.date),
        spec.summary or "",
        marshal.gem_requirement(spec.required_ruby_version),
        marshal.gem_requirement(spec.required_rubygems_version),
        spec.platform,
        [_dependency_object(d) for d in spec.dependencies],
        "",  # rubyforge_project
        spec.email[0] if len(spec.email) == 1 else list(spec.email),
        list(spec.authors),
        spec.description or "",
        spec.homepage or "",
        True,  # has_rdoc
        spec.platform,
        list(spec.licenses),
        dict(spec.metadata),
    ]
    dumped = UserDump("Gem::Specification", marshal.dumps(fields))
    return zlib.compress(marshal.dumps(dumped))


def decode_quick_spec(data: bytes) -> GemSpecification:
    """Inverse of :func:`encode_quick_spec`."""
    try:
        outer = marshal.loads(zlib.decompress(data))
    except zlib.error as e:
        raise MarshalError(f"Corrupt quick gemspec: {e}") from e
    if not isinstance(outer, UserDump) or outer.class_name != "Gem::Specification":
        raise MarshalError("Not a marshalled Gem::Specification")
    fields = marshal.loads(outer.data)
    if not isinstance(fields, list) or len(fields) < 17:
        raise MarshalError("Truncated Gem::Specification dump")

    def listify(value: Any) -> List[str]:
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [_text(v) for v in value]
        return [_text(value)]

    dependencies = []
    for dep in fields[9] or []:
        if isinstance(dep, RubyObject):
            dependencies.append(
                GemDependency(
                    name=_text(dep.ivars.get("@name")),
                    requirements=_requirement_pairs(dep.ivars.get("@requirement")),
                    type="development" if str(dep.ivars.get("@type")) == "development" else "runtime",
                )
            )
    metadata = fields[18] if len(fields) > 18 and isinstance(fields[18], dict) else {}

    return GemSpecification(
        rubygems_version=_text(fields[0]) or "3.0.0",
        specification_version=fields[1] if isinstance(fields[1], int) else 4,
        name=_text(fields[2]),
        version=_text(fields[3]),
        date=_from_ruby_time(fields[4]),
        summary=_text(fields[5]) or None,
        required_ruby_version=_requirement_pairs(fields[6]),
        required_rubygems_version=_requirement_pairs(fields[7]),
        dependencies=dependencies,
        email=listify(fields[11]),
        authors=listify(fields[12]),
        description=_text(fields[13]) or None,
        homepage=_text(fields[14]) or None,
        platform=_text(fields[16]) or RUBY_PLATFORM,
        licenses=listify(fields[17]) if len(fields) > 17 else [],
        metadata={_text(k): _text(v) for k, v in metadata.items()},
    )


# ---------------------------------------------------------------------------
# Legacy quick index
# ---------------------------------------------------------------------------


def encode_legacy_index(versions: Iterable[PackageVersion]) -> bytes:
    return "".join(f"{v.full_name}\n" for v in versions).encode("utf-8")
