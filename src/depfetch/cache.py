"""Read-only specification sources derived from the filesystem.

Three tiers, each computed once per process on first use:

- installed: metadata of packages already materialised in the install path
- local: artifacts in the project cache and the global cache
- global: artifacts in the cross-project cache, one directory per registry

Unreadable files are skipped with a warning; a corrupt cache never aborts
aggregation.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, List, Optional

import yaml

from depfetch.artifact import read_specification
from depfetch.common.logging_utils import extra_context
from depfetch.common.memo import single_flight
from depfetch.constants import Constants, VERSION
from depfetch.errors import ArtifactError, UntrustedArtifact
from depfetch.index import Index
from depfetch.models import Specification

if TYPE_CHECKING:
    from depfetch.remote import Remote
    from depfetch.settings import Settings

logger = logging.getLogger(__name__)

_SELF_ARTIFACT = re.compile(rf"^{re.escape(Constants.SELF_NAME)}-[\d.]+(-[^/]+)?\{Constants.ARTIFACT_EXTENSION}$")
_LOCAL_SLUG = "local"


class CacheTiers:
    """Installed, local and global specification tiers for one source."""

    def __init__(self, settings: "Settings", source: Any = None):
        self.settings = settings
        self.source = source

    # -- tiers ---------------------------------------------------------

    @single_flight
    def installed_specs(self) -> Index:
        """Packages already installed into the target environment."""
        idx = Index()
        have_self = False
        spec_dirs = [(self.settings.install_path / Constants.SPECIFICATIONS_DIR, False)]
        if self.settings.builtin_specification_dir is not None:
            spec_dirs.append((self.settings.builtin_specification_dir, True))
        for directory, builtin in spec_dirs:
            for path in sorted(directory.glob("*.yaml")) if directory.is_dir() else ():
                spec = self._load_installed(path, builtin)
                if spec is None:
                    continue
                if spec.name == Constants.SELF_NAME:
                    if str(spec.version) != VERSION:
                        continue
                    have_self = True
                idx.add(spec)
        if not have_self:
            # The running tool always counts as installed.
            idx.add(Specification(
                name=Constants.SELF_NAME,
                version=VERSION,
                source=self.source,
                loaded_from=str(Path(__file__).resolve().parent),
            ))
        return idx

    @single_flight
    def cached_specs(self) -> Index:
        """Installed specs plus artifacts from the project and global caches."""
        idx = self.installed_specs.copy()
        for path in self._artifacts(self.settings.app_cache_path):
            self._add_artifact(idx, path)
        for path in self._global_artifacts():
            self._add_artifact(idx, path)
        return idx

    @single_flight
    def globally_cached_specs(self) -> Index:
        """Installed specs plus artifacts from the global cache only."""
        idx = self.installed_specs.copy()
        for path in self._global_artifacts():
            self._add_artifact(idx, path)
        return idx

    def specifications(self, tier: str) -> Index:
        """Index for ``tier``: ``installed``, ``local`` or ``global``."""
        try:
            attr = {"installed": "installed_specs", "local": "cached_specs", "global": "globally_cached_specs"}[tier]
        except KeyError:
            raise ValueError(f"Unknown cache tier: {tier!r}") from None
        return getattr(self, attr)

    def installed(self, spec: Specification) -> bool:
        return bool(self.installed_specs.search(spec))

    # -- cache paths ---------------------------------------------------

    def global_cache_dir(self, remote: Optional["Remote"]) -> Path:
        slug = remote.cache_slug if remote is not None else _LOCAL_SLUG
        return self.settings.global_cache_path / slug

    def cache_dirs(self, spec: Specification) -> List[Path]:
        """Directories searched for ``spec``'s artifact, in priority order."""
        dirs = [self.settings.app_cache_path]
        if spec.remote is not None:
            dirs.append(self.global_cache_dir(spec.remote))
        else:
            dirs.extend(self._global_dirs())
        dirs.append(self.settings.install_cache_path)
        return dirs

    def cached_path(self, spec: Specification) -> Optional[Path]:
        """First existing artifact file for ``spec``, or None."""
        for directory in self.cache_dirs(spec):
            candidate = directory / spec.file_name
            if candidate.is_file():
                return candidate
        return None

    def cache_globally(self, artifact: Path, remote: Optional["Remote"]) -> Optional[Path]:
        """Copy ``artifact`` into the global cache unless it is already there."""
        if self.settings.global_cache_path.resolve() in artifact.resolve().parents:
            return artifact
        target_dir = self.global_cache_dir(remote)
        target = target_dir / artifact.name
        if target.exists():
            return target
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            shutil.copy2(artifact, tmp)
            tmp.replace(target)
        except OSError as exc:
            logger.warning("Could not populate global cache with %s: %s", artifact.name, exc)
            return None
        logger.debug(
            "Cached artifact globally",
            extra=extra_context(event="cache_write", component="cache", target=str(target)),
        )
        return target

    # -- helpers -------------------------------------------------------

    def _global_dirs(self) -> List[Path]:
        root = self.settings.global_cache_path
        if not root.is_dir():
            return []
        return sorted(p for p in root.iterdir() if p.is_dir())

    def _global_artifacts(self) -> Iterator[Path]:
        for directory in self._global_dirs():
            yield from self._artifacts(directory)

    @staticmethod
    def _artifacts(directory: Optional[Path]) -> Iterator[Path]:
        if directory is None or not directory.is_dir():
            return
        for path in sorted(directory.glob("*" + Constants.ARTIFACT_EXTENSION)):
            if _SELF_ARTIFACT.match(path.name):
                continue
            yield path

    def _add_artifact(self, idx: Index, path: Path) -> None:
        try:
            spec = read_specification(path)
        except (ArtifactError, UntrustedArtifact, OSError) as exc:
            logger.warning(
                "Skipping unreadable cached artifact %s: %s",
                path,
                exc,
                extra=extra_context(event="cache_read", component="cache", outcome="skipped"),
            )
            return
        spec.source = self.source
        idx.add(spec)

    def _load_installed(self, path: Path, builtin: bool) -> Optional[Specification]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
            spec = Specification.from_dict(data, source=self.source)
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.warning(
                "Skipping unreadable installed specification %s: %s",
                path,
                exc,
                extra=extra_context(event="cache_read", component="cache", outcome="skipped"),
            )
            return None
        spec.loaded_from = str(path)
        if builtin:
            spec.builtin = True
        return spec
