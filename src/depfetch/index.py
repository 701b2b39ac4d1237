"""In-memory multimap of specifications keyed by package name.

Within one Index no two entries share the composite key
(name, version, platform). ``use`` merges other specifications in, keeping
the existing entry on conflict unless ``override`` is requested. Every
specification ever offered is also remembered per name, duplicates
included, so callers can tell which registries offered a package
(``search_all``).
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Set, Union

from depfetch.models import SpecKey, Specification


class Index:
    """Specifications grouped by name, unique by composite key."""

    def __init__(self, specs: Iterable[Specification] = ()):
        self._specs: Dict[str, Dict[SpecKey, Specification]] = {}
        self._all_specs: Dict[str, List[Specification]] = {}
        for spec in specs:
            self.add(spec)

    def copy(self) -> "Index":
        """Shallow copy: new containers, same Specification objects."""
        other = Index()
        other._specs = {name: dict(entries) for name, entries in self._specs.items()}
        other._all_specs = {name: list(entries) for name, entries in self._all_specs.items()}
        return other

    def add(self, spec: Specification) -> "Index":
        """Insert ``spec``, replacing any entry with the same composite key."""
        self._specs.setdefault(spec.name, {})[spec.key] = spec
        self._remember(spec)
        return self

    def use(self, specs: Union["Index", Iterable[Specification], None], override: bool = False) -> "Index":
        """Merge ``specs`` into this index.

        On a composite-key conflict the existing entry is kept, unless
        ``override`` is true, in which case the incoming one replaces it.
        Merging the same input twice is a no-op.
        """
        if specs is None:
            return self
        for spec in specs:
            entries = self._specs.setdefault(spec.name, {})
            existing = entries.get(spec.key)
            if existing is None or override:
                entries[spec.key] = spec
            self._remember(spec)
        return self

    def _remember(self, spec: Specification) -> None:
        seen = self._all_specs.setdefault(spec.name, [])
        if not any(s is spec for s in seen):
            seen.append(spec)

    def replace(self, old: Specification, new: Specification) -> Specification:
        """Swap the entry stored for ``old`` with ``new``.

        Used when metadata is re-derived from a downloaded artifact. Holders
        of ``old`` must look the entry up again.
        """
        entries = self._specs.get(old.name, {})
        if entries.get(old.key) is old:
            del entries[old.key]
        self._specs.setdefault(new.name, {})[new.key] = new
        seen = self._all_specs.setdefault(new.name, [])
        for i, spec in enumerate(seen):
            if spec is old:
                seen[i] = new
                break
        else:
            seen.append(new)
        return new

    def search(self, query: Union[str, Specification]) -> List[Specification]:
        """Return every version of a name, or the exact match for a specification.

        Results are ordered by version, then platform.
        """
        if isinstance(query, Specification):
            found = self._specs.get(query.name, {}).get(query.key)
            return [found] if found is not None else []
        return sorted(
            self._specs.get(query, {}).values(),
            key=lambda s: (s.version, s.platform),
        )

    def search_all(self, name: str) -> List[Specification]:
        """Every specification ever offered for ``name``, duplicates included."""
        return list(self._all_specs.get(name, ()))

    def __getitem__(self, query: Union[str, Specification]) -> List[Specification]:
        return self.search(query)

    def __contains__(self, query: object) -> bool:
        if isinstance(query, (str, Specification)):
            return bool(self.search(query))
        return False

    def __iter__(self) -> Iterator[Specification]:
        for entries in self._specs.values():
            yield from entries.values()

    def __len__(self) -> int:
        return self.size

    @property
    def size(self) -> int:
        return sum(len(entries) for entries in self._specs.values())

    def names(self) -> Set[str]:
        return {name for name, entries in self._specs.items() if entries}

    @property
    def dependency_names(self) -> Set[str]:
        """Union of dependency names over every contained specification."""
        names: Set[str] = set()
        for spec in self:
            names.update(spec.dependencies)
        return names

    @property
    def unmet_dependency_names(self) -> Set[str]:
        """Dependency names referenced here but absent as a top-level name."""
        present = self.names()
        return {name for name in self.dependency_names if name not in present}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Index):
            return NotImplemented
        return self._keys() == other._keys()

    def _keys(self) -> Set[SpecKey]:
        return {spec.key for spec in self}

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<Index {self.size} specs, {len(self.names())} names>"
