"""
RubyGems version ordering.

A version string is split into numeric and alphabetic segments
("1.0.rc2" -> [1, 0, "rc", 2]). Any alphabetic segment marks a prerelease.
Comparison follows Gem::Version#<=>: trailing zeros are ignored, a string
segment sorts before a numeric one.
"""
from __future__ import annotations

import functools
import re
from typing import List, Union

_SEGMENT_RE = re.compile(r"[0-9]+|[a-z]+", re.IGNORECASE)
_VALID_RE = re.compile(r"^\s*[0-9]+(?:\.[0-9a-zA-Z]+)*(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?\s*$")

Segment = Union[int, str]


def is_valid_version(value: str) -> bool:
    return bool(value) and _VALID_RE.match(str(value)) is not None


@functools.total_ordering
class GemVersion:
    """Comparable wrapper around a version string."""

    __slots__ = ("version", "_segments")

    def __init__(self, version: str):
        version = str(version).strip()
        if not is_valid_version(version):
            raise ValueError(f"Malformed version number string {version!r}")
        # "1.0-beta" is treated as "1.0.pre.beta", as RubyGems does.
        self.version = version.replace("-", ".pre.")
        self._segments = self._canonical(self._split(self.version))

    @staticmethod
    def _split(version: str) -> List[Segment]:
        return [int(s) if s.isdigit() else s for s in _SEGMENT_RE.findall(version)]

    @staticmethod
    def _canonical(segments: List[Segment]) -> List[Segment]:
        # Drop trailing zeros, including zeros right before a prerelease tag.
        result = list(segments)
        first_str = next((i for i, s in enumerate(result) if isinstance(s, str)), len(result))
        release, pre = result[:first_str], result[first_str:]
        while release and release[-1] == 0:
            release.pop()
        while pre and pre[-1] == 0:
            pre.pop()
        return release + pre

    @property
    def segments(self) -> List[Segment]:
        return self._split(self.version)

    @property
    def prerelease(self) -> bool:
        return any(isinstance(s, str) for s in self._segments)

    def release(self) -> "GemVersion":
        """The version with any prerelease part removed ("1.0.rc1" -> "1.0")."""
        if not self.prerelease:
            return self
        segs = self.segments
        while any(isinstance(s, str) for s in segs):
            segs.pop()
        return GemVersion(".".join(str(s) for s in segs) or "0")

    def _cmp(self, other: "GemVersion") -> int:
        lhs, rhs = self._segments, other._segments
        for i in range(max(len(lhs), len(rhs))):
            left = lhs[i] if i < len(lhs) else 0
            right = rhs[i] if i < len(rhs) else 0
            if left == right:
                continue
            if isinstance(left, str) and isinstance(right, int):
                return -1
            if isinstance(left, int) and isinstance(right, str):
                return 1
            return -1 if left < right else 1
        return 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GemVersion):
            return NotImplemented
        return self._cmp(other) == 0

    def __lt__(self, other: "GemVersion") -> bool:
        if not isinstance(other, GemVersion):
            return NotImplemented
        return self._cmp(other) < 0

    def __hash__(self) -> int:
        return hash(tuple(self._segments))

    def __str__(self) -> str:
        return self.version

    def __repr__(self) -> str:
        return f"GemVersion({self.version!r})"


def version_key(value: str) -> tuple:
    """
    Sort key for raw version strings. Unparseable strings sort first, by text.
    """
    try:
        return (1, GemVersion(value))
    except ValueError:
        return (0, str(value))
