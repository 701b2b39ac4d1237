"""Explicit context threaded through aggregation and installation.

Holds the settings, the diagnostic sink, the ambiguity log and the
collaborators (HTTP transport, privileged command runner) for one run.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from depfetch.ambiguity import AmbiguityTracker
from depfetch.common.http_client import HttpTransport
from depfetch.common.logging_utils import extra_context, redact
from depfetch.errors import InstallError
from depfetch.settings import Settings

logger = logging.getLogger(__name__)


class Reporter:
    """Diagnostic sink for user-facing output.

    Every event is kept as a ``(level, message)`` pair for the presentation
    layer and mirrored to ``logging``.
    """

    _LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "confirm": logging.INFO,
        "warn": logging.WARNING,
        "error": logging.ERROR,
    }

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.events: List[Tuple[str, str]] = []
        self._lock = threading.Lock()
        self._logger = logging.getLogger("depfetch.ui")

    def _emit(self, level: str, message: str) -> None:
        message = redact(message)
        with self._lock:
            self.events.append((level, message))
        if self.quiet and level not in ("warn", "error"):
            return
        self._logger.log(self._LEVELS[level], message)

    def debug(self, message: str) -> None:
        self._emit("debug", message)

    def info(self, message: str) -> None:
        self._emit("info", message)

    def confirm(self, message: str) -> None:
        self._emit("confirm", message)

    def warn(self, message: str) -> None:
        self._emit("warn", message)

    def error(self, message: str) -> None:
        self._emit("error", message)

    def messages(self, level: Optional[str] = None) -> List[str]:
        with self._lock:
            return [msg for lvl, msg in self.events if level is None or lvl == level]


class PathLocks:
    """One lock per destination path, for serialising privileged writes."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def for_path(self, path: Path) -> threading.Lock:
        key = str(Path(path).resolve())
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


class Elevator:
    """Runs filesystem commands with elevated privileges via ``sudo``."""

    def __init__(self, command: Sequence[str] = ("sudo", "-p", "Enter your password to install the packages: ")):
        self.command = list(command)

    def run(self, argv: Sequence[str]) -> None:
        full = self.command + list(argv)
        logger.debug(
            "Running elevated command",
            extra=extra_context(event="sudo", component="installer", action=argv[0] if argv else None),
        )
        try:
            subprocess.run(full, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise InstallError(
                f"Elevated command failed: {shlex.join(list(argv))}" + (f" ({stderr})" if stderr else "")
            ) from exc
        except OSError as exc:
            raise InstallError(f"Could not run elevated command: {exc}") from exc

    def mkdir_p(self, path: Path) -> None:
        self.run(["mkdir", "-p", str(path)])

    def copy_into(self, sources: Sequence[Path], dest_dir: Path) -> None:
        if sources:
            self.run(["cp", "-R", *[str(s) for s in sources], str(dest_dir)])

    def move(self, src: Path, dest: Path) -> None:
        self.run(["mv", str(src), str(dest)])


@dataclass
class InstallContext:
    """Everything one aggregation/install run needs, passed explicitly."""

    settings: Settings
    reporter: Reporter = field(default_factory=Reporter)
    ambiguities: AmbiguityTracker = field(default_factory=AmbiguityTracker)
    transport: Any = None
    elevator: Elevator = field(default_factory=Elevator)
    path_locks: PathLocks = field(default_factory=PathLocks)
    post_install_messages: Dict[str, str] = field(default_factory=dict)
    using: List[Any] = field(default_factory=list)
    installed: List[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.transport is None:
            self.transport = HttpTransport(timeout=self.settings.timeout)

    def requires_elevation(self) -> bool:
        return self.settings.requires_elevation()
