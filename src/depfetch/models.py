"""Data models for package specifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from packaging.version import InvalidVersion, Version

from depfetch.constants import Constants
from depfetch.remote import Remote

logger = logging.getLogger(__name__)

# Stable identity of a specification inside an Index.
SpecKey = Tuple[str, Version, str]


def _sequence(raw: Any, field_name: str) -> Tuple[Any, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"{field_name} must be a list, got {type(raw).__name__}")
    return tuple(raw)


def _string_list(raw: Any, field_name: str) -> Tuple[str, ...]:
    items = _sequence(raw, field_name)
    for item in items:
        if not isinstance(item, str):
            raise ValueError(f"Invalid {field_name} entry: {item!r}")
    return items


def _dependency_names(raw: Any) -> Tuple[str, ...]:
    """Accept ``["a", "b"]`` or ``[["a", ">= 1"], ...]`` and return the names."""
    names = []
    for entry in _sequence(raw, "dependencies"):
        if isinstance(entry, str):
            name = entry
        elif isinstance(entry, (list, tuple)) and entry and isinstance(entry[0], str):
            name = entry[0]
        elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
            name = entry["name"]
        else:
            raise ValueError(f"Invalid dependency entry: {entry!r}")
        name = name.strip()
        if name and name not in names:
            names.append(name)
    return tuple(names)


@dataclass(eq=False)
class Specification:
    """Metadata describing one installable package version.

    Equality and hashing use the composite key (name, version, platform);
    ``remote`` and ``source`` are back-references to where the record came
    from and never take part in identity.
    """

    name: str
    version: Version
    platform: str = Constants.DEFAULT_PLATFORM
    dependencies: Tuple[str, ...] = ()
    remote: Optional[Remote] = None
    source: Any = None
    post_install_message: Optional[str] = None
    extensions: Tuple[str, ...] = ()
    executables: Tuple[str, ...] = ()
    summary: str = ""
    builtin: bool = False  # bundled with the host runtime
    loaded_from: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Specification requires a name")
        if not isinstance(self.version, Version):
            self.version = Version(str(self.version))
        self.platform = self.platform or Constants.DEFAULT_PLATFORM
        self.dependencies = _dependency_names(self.dependencies)
        self.extensions = _string_list(self.extensions, "extensions")
        self.executables = _string_list(self.executables, "executables")

    @property
    def key(self) -> SpecKey:
        return (self.name, self.version, self.platform)

    @property
    def full_name(self) -> str:
        if self.platform == Constants.DEFAULT_PLATFORM:
            return f"{self.name}-{self.version}"
        return f"{self.name}-{self.version}-{self.platform}"

    @property
    def file_name(self) -> str:
        """Artifact file name used for cache lookups and downloads."""
        return self.full_name + Constants.ARTIFACT_EXTENSION

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Specification):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        origin = self.remote.anonymized_uri if self.remote else "local"
        return f"<Specification {self.full_name} from {origin}>"

    def rederive(self, derived: "Specification") -> "Specification":
        """Return a new record with ``derived``'s metadata and this record's origin.

        Used after downloading an artifact: the metadata embedded in the
        artifact wins over what the registry reported.
        """
        return replace(
            derived,
            remote=self.remote,
            source=self.source,
            loaded_from=self.loaded_from,
            extra=dict(derived.extra),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "version": str(self.version),
            "platform": self.platform,
            "dependencies": list(self.dependencies),
        }
        if self.summary:
            data["summary"] = self.summary
        if self.post_install_message:
            data["post_install_message"] = self.post_install_message
        if self.extensions:
            data["extensions"] = list(self.extensions)
        if self.executables:
            data["executables"] = list(self.executables)
        if self.builtin:
            data["builtin"] = True
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        *,
        remote: Optional[Remote] = None,
        source: Any = None,
    ) -> "Specification":
        """Build a specification from a registry record or embedded metadata.

        Raises:
            ValueError: when required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Specification record must be a mapping, got {type(data).__name__}")
        known = {
            "name", "version", "platform", "dependencies", "summary",
            "post_install_message", "extensions", "executables", "builtin",
        }
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Specification record has no name")
        try:
            version = Version(str(data.get("version", "")))
        except InvalidVersion as exc:
            raise ValueError(f"Invalid version for {name}: {data.get('version')!r}") from exc
        return cls(
            name=name.strip(),
            version=version,
            platform=str(data.get("platform") or Constants.DEFAULT_PLATFORM),
            dependencies=data.get("dependencies"),
            remote=remote,
            source=source,
            post_install_message=data.get("post_install_message"),
            extensions=data.get("extensions"),
            executables=data.get("executables"),
            summary=str(data.get("summary") or ""),
            builtin=bool(data.get("builtin", False)),
            extra={k: v for k, v in data.items() if k not in known},
        )
