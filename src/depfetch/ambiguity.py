"""Log of packages offered by more than one registry during a run."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, List, Tuple


@dataclass(frozen=True)
class AmbiguityRecord:
    """A package name found in several registries."""

    name: str
    installed_from: str
    also_found_in: Tuple[str, ...]

    def warning_lines(self) -> List[str]:
        lines = [
            f"Warning: the package '{self.name}' was found in multiple sources.",
            f"Installed from: {self.installed_from}",
            "Also found in:",
        ]
        lines.extend(f"  * {uri}" for uri in self.also_found_in)
        lines.extend([
            "You should add a source requirement to restrict this package to your preferred source.",
            "For example:",
            f"    depfetch install {self.name} --source {self.installed_from}",
            f"Then uninstall the package '{self.name}' (or delete all installed packages) and then install again.",
        ])
        return lines


class AmbiguityTracker:
    """Append-only, at most one record per package name."""

    def __init__(self) -> None:
        self._records: List[AmbiguityRecord] = []
        self._lock = threading.Lock()

    def record(self, name: str, installed_from: str, also_found_in: Iterable[str]) -> bool:
        """Add a record for ``name``; returns False if it was already recorded."""
        others = tuple(uri for uri in dict.fromkeys(also_found_in) if uri != installed_from)
        if not others:
            return False
        with self._lock:
            if any(r.name == name for r in self._records):
                return False
            self._records.append(AmbiguityRecord(name, installed_from, others))
            return True

    @property
    def records(self) -> List[AmbiguityRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    def warning_lines(self) -> List[str]:
        lines: List[str] = []
        for record in self.records:
            lines.extend(record.warning_lines())
        return lines
