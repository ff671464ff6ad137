"""
In-memory view of the versions listed by the index fragments.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set, Tuple

from gembox.data.index_files import COLLECTION_FRAGMENTS, fragment_filename, read_fragment
from gembox.domain.models import PackageVersion
from gembox.domain.versions import version_key

logger = logging.getLogger(__name__)


def group_key(name: str) -> str:
    """Heading a package is listed under: its case-folded first letter."""
    return name[:1].casefold()


def _name_order(name: str) -> Tuple[str, str]:
    return (name.casefold(), name)


class VersionCollection:
    """
    Immutable, deduplicated set of PackageVersion entries.

    Iteration yields versions ordered by name, version, then platform.
    """

    def __init__(self, versions: Iterable[PackageVersion] = ()):
        self._versions: FrozenSet[PackageVersion] = frozenset(versions)

    @classmethod
    def load(cls, directory: Path, fragments: Iterable[str] = COLLECTION_FRAGMENTS) -> "VersionCollection":
        """
        Union every fragment present in ``directory``.

        Missing fragments contribute nothing; an index directory without any
        fragment yields an empty collection.
        """
        collection = cls()
        for fragment in fragments:
            path = directory / fragment_filename(fragment)
            if not path.is_file():
                logger.debug(f"Fragment {path.name} not present; skipping")
                continue
            collection = collection | cls(read_fragment(path))
        return collection

    def union(self, other: "VersionCollection") -> "VersionCollection":
        return VersionCollection(self._versions | other._versions)

    __or__ = union

    def __iter__(self) -> Iterator[PackageVersion]:
        return iter(sorted(self._versions))

    def __len__(self) -> int:
        return len(self._versions)

    def __contains__(self, item: object) -> bool:
        return item in self._versions

    def __eq__(self, other: object) -> bool:
        if isinstance(other, VersionCollection):
            return self._versions == other._versions
        if isinstance(other, (set, frozenset)):
            return self._versions == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._versions)

    def __repr__(self) -> str:
        return f"VersionCollection({len(self)} versions)"

    def to_set(self) -> Set[PackageVersion]:
        return set(self._versions)

    def names(self) -> List[str]:
        return sorted({v.name for v in self._versions}, key=_name_order)

    def by_name(self) -> List[Tuple[str, List[PackageVersion]]]:
        """Pairs of (name, versions newest first), ordered case-insensitively by name."""
        grouped: Dict[str, List[PackageVersion]] = defaultdict(list)
        for v in self._versions:
            grouped[v.name].append(v)
        return [
            (name, sorted(grouped[name], key=lambda v: (version_key(v.version), v.platform), reverse=True))
            for name in sorted(grouped, key=_name_order)
        ]

    def versions_of(self, name: str) -> List[PackageVersion]:
        return sorted((v for v in self._versions if v.name == name), key=lambda v: version_key(v.version))

    def newest(self, name: str) -> Optional[PackageVersion]:
        versions = self.versions_of(name)
        return versions[-1] if versions else None

    def oldest(self, name: str) -> Optional[PackageVersion]:
        versions = self.versions_of(name)
        return versions[0] if versions else None

    def group_index(self) -> Set[str]:
        """Distinct case-folded first letters of the package names."""
        return {group_key(v.name) for v in self._versions if v.name}
