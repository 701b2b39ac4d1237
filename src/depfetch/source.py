"""Registry source: aggregates remote registries and local caches into one Index.

``RegistrySource`` owns the configured registries, decides per run whether
to use the bulk index or the incremental API, and merges the remote view
with the cache tiers. It is also the entry point for installing and caching
the specifications it produced.
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from packaging.version import InvalidVersion, Version

from depfetch.cache import CacheTiers
from depfetch.common.logging_utils import extra_context
from depfetch.common.memo import is_computed, single_flight
from depfetch.constants import Constants
from depfetch.context import InstallContext
from depfetch.errors import FetchFailure, InstallError, NoSourcesError, PackageNotFound, RegistryUnavailable
from depfetch.fetcher import Fetcher
from depfetch.index import Index
from depfetch.installer import Installer
from depfetch.models import Specification
from depfetch.remote import Remote, suppress_configured_credentials

logger = logging.getLogger(__name__)


class RegistrySource:
    """All configured registries plus the local cache tiers.

    Args:
        context: Settings, reporter and collaborators for this run.
        remotes: Registry URIs in priority order, most recently added first.
    """

    def __init__(self, context: InstallContext, remotes: Iterable[str] = ()):
        self.context = context
        self.remotes: List[Remote] = []
        # Names the caller already knows it needs; seeds the incremental protocol.
        self.dependency_names: Set[str] = set()
        self.fetch_failures: List[FetchFailure] = []
        self._allow_remote = False
        self._allow_cached = False
        self._failed: Set[Remote] = set()
        self._merge_lock = threading.Lock()
        self.tiers = CacheTiers(context.settings, self)
        for uri in reversed(list(remotes)):
            self.add_remote(uri)

    # -- configuration -------------------------------------------------

    @property
    def settings(self):
        return self.context.settings

    @property
    def reporter(self):
        return self.context.reporter

    def allow_remote(self) -> None:
        """Let ``specs`` include registry metadata (network access)."""
        self._allow_remote = True

    def allow_cached(self) -> None:
        """Let ``specs`` include the project-local artifact cache."""
        self._allow_cached = True

    def add_remote(self, uri: Any) -> Remote:
        remote = uri if isinstance(uri, Remote) else Remote(str(uri))
        if remote not in self.remotes:
            self.remotes.insert(0, remote)
        return remote

    def replace_remotes(self, other_remotes: Iterable[Any]) -> bool:
        """Replace the registry list; returns False when nothing changed."""
        others = [r if isinstance(r, Remote) else Remote(str(r)) for r in other_remotes]
        if others == self.remotes:
            return False
        self.remotes = []
        for remote in reversed(others):
            self.add_remote(remote)
        return True

    @property
    def credless_remotes(self) -> List[str]:
        return [suppress_configured_credentials(r, self.settings.credentials) for r in self.remotes]

    def includes(self, other: object) -> bool:
        """True when every registry of ``other`` is also one of ours."""
        return isinstance(other, RegistrySource) and set(other.credless_remotes) <= set(self.credless_remotes)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RegistrySource) and other.credless_remotes == self.credless_remotes

    def __hash__(self) -> int:
        return hash(tuple(self.credless_remotes))

    def __str__(self) -> str:
        return "registry source " + ", ".join(r.anonymized_uri for r in self.remotes)

    def options(self) -> Dict[str, List[str]]:
        return {"remotes": [r.uri for r in self.remotes]}

    @classmethod
    def from_lock(cls, context: InstallContext, options: Dict[str, Any]) -> "RegistrySource":
        return cls(context, options.get("remotes") or [])

    def to_lock(self) -> str:
        """Lockfile header for this source; credentials from the store are omitted."""
        lines = [Constants.LOCK_HEADER]
        for remote in reversed(self.remotes):
            lines.append(f"  remote: {suppress_configured_credentials(remote, self.settings.credentials)}")
        lines.append("  specs:")
        return "\n".join(lines) + "\n"

    # -- fetchers ------------------------------------------------------

    @single_flight
    def fetchers(self) -> List[Fetcher]:
        return [
            Fetcher(remote, self.context.transport, incremental_enabled=self.settings.incremental)
            for remote in self.remotes
        ]

    def fetcher_for(self, remote: Remote) -> Fetcher:
        for fetcher in self.fetchers:
            if fetcher.remote == remote:
                return fetcher
        return Fetcher(remote, self.context.transport, incremental_enabled=self.settings.incremental)

    def api_fetchers(self) -> List[Fetcher]:
        return [f for f in self.fetchers if f.remote not in self._failed and f.use_api]

    # -- index ---------------------------------------------------------

    @single_flight
    def specs(self) -> Index:
        """Remote specs (when allowed) overridden by the cache tiers."""
        idx = self.remote_specs.copy() if self._allow_remote else Index()
        if self._allow_cached or self._allow_remote:
            idx.use(self.tiers.cached_specs, override=True)
        idx.use(self.tiers.globally_cached_specs, override=True)
        idx.use(self.tiers.installed_specs, override=True)
        return idx

    @single_flight
    def remote_specs(self) -> Index:
        """Specifications from every registry, fetched adaptively."""
        return self._aggregate()

    def _aggregate(self) -> Index:
        idx = Index()
        api_fetchers = self.api_fetchers()
        index_fetchers = [f for f in self.fetchers if f not in api_fetchers]

        for fetcher in index_fetchers:
            self._query([fetcher], None, idx, "Fetching source index from {}")

        # Past this many specs or names, per-name requests cost more than the
        # full index, so every registry is treated as index-only.
        allow_api = (
            idx.size < Constants.REQUEST_LIMIT
            and len(self.dependency_names) < Constants.REQUEST_LIMIT
        )
        if not allow_api:
            self.reporter.debug(
                f"Need to query more than {Constants.REQUEST_LIMIT} packages. "
                "Downloading full index instead..."
            )

        if allow_api:
            if api_fetchers:
                self._query(api_fetchers, self.dependency_names, idx, "Fetching package metadata from {}")

                # A package found in one registry may depend on versions that
                # only another registry has: re-ask every registry for every
                # dependency name until a full pass adds nothing.
                while True:
                    count = idx.size
                    self._query(api_fetchers, idx.dependency_names, idx,
                                "Fetching version metadata from {}", override=True)
                    if idx.size == count:
                        break

                unmet = idx.unmet_dependency_names
                if unmet:
                    self._query(api_fetchers, unmet, idx, "Fetching dependency metadata from {}",
                                refresh=True)
            else:
                allow_api = False

        if not allow_api:
            self._query(api_fetchers, None, idx, "Fetching source index from {}")

        logger.debug(
            "Aggregated remote index",
            extra=extra_context(
                event="aggregate", component="source", outcome="success",
                count=idx.size, failures=len(self.fetch_failures),
            ),
        )
        return idx

    def _query(
        self,
        fetchers: List[Fetcher],
        names: Optional[Set[str]],
        idx: Index,
        message: str,
        override: bool = False,
        refresh: bool = False,
    ) -> None:
        """Run one pass over ``fetchers`` and merge the results into ``idx``.

        Every fetch in the pass completes before anything is merged, and
        merges happen one at a time in fetcher order.
        """
        healthy = [f for f in fetchers if f.remote not in self._failed]
        if not healthy:
            return
        names = None if names is None else set(names)
        jobs = min(self.settings.jobs, len(healthy))
        if jobs > 1:
            with ThreadPoolExecutor(max_workers=jobs) as pool:
                futures = [pool.submit(self._fetch_one, f, names, message, refresh) for f in healthy]
                results = [future.result() for future in futures]
        else:
            results = [self._fetch_one(f, names, message, refresh) for f in healthy]
        for specs in results:
            if specs is None:
                continue
            with self._merge_lock:
                idx.use(specs, override=override)

    def _fetch_one(
        self,
        fetcher: Fetcher,
        names: Optional[Set[str]],
        message: str,
        refresh: bool,
    ) -> Optional[List[Specification]]:
        self.reporter.info(message.format(fetcher.uri))
        try:
            if refresh and names is not None:
                fetcher.forget(names)
            return fetcher.specs(names, self)
        except RegistryUnavailable as exc:
            failure = FetchFailure(fetcher.remote, exc.reason)
            with self._merge_lock:
                self._failed.add(fetcher.remote)
                self.fetch_failures.append(failure)
            self.reporter.warn(str(failure))
            return None

    def unmet_deps(self) -> Set[str]:
        if self._allow_remote and self.api_fetchers():
            return self.remote_specs.unmet_dependency_names
        return set()

    def replace_spec(self, old: Specification, new: Specification) -> Specification:
        """Swap a re-derived specification into every index already built."""
        for attr in ("remote_specs", "specs"):
            if is_computed(self, attr):
                with self._merge_lock:
                    getattr(self, attr).replace(old, new)
        return new

    def find(self, name: str, version: Optional[str] = None) -> Specification:
        """Highest available specification for ``name`` (optionally an exact version).

        Raises:
            NoSourcesError: nothing matched and no registries are configured.
            PackageNotFound: nothing matched.
        """
        candidates = self.specs.search(name)
        if version:
            try:
                wanted = Version(version)
            except InvalidVersion:
                wanted = None
            candidates = [s for s in candidates if wanted is not None and s.version == wanted]
        if not candidates:
            label = f"{name} ({version})" if version else name
            if not self.remotes:
                raise NoSourcesError(f"Could not find package '{label}' in any of the sources")
            raise PackageNotFound(
                f"Could not find package '{label}' in any of the sources",
                hint="Check the package name, or add a source that provides it.",
            )
        best = candidates[-1].version
        top = [s for s in candidates if s.version == best]
        preferred = [s for s in top if s.platform == Constants.DEFAULT_PLATFORM]
        return (preferred or top)[-1]

    def lookup(self, spec: Specification) -> Specification:
        """Current entry for ``spec`` in ``specs`` (after any re-derivation)."""
        found = self.specs.search(spec)
        return found[0] if found else spec

    # -- install / cache -----------------------------------------------

    @single_flight
    def installer(self) -> Installer:
        return Installer(self)

    def install(self, spec: Specification, force: bool = False, ensure_builtin_cached: bool = False) -> Optional[str]:
        """Install ``spec`` and return its post-install message, if any."""
        result = self.installer.install(spec, force=force, ensure_builtin_cached=ensure_builtin_cached)
        return result.post_install_message

    def cache(self, spec: Specification, custom_path: Optional[Path] = None) -> Optional[Path]:
        """Copy ``spec``'s artifact into the project-local cache.

        Raises:
            PackageNotFound: no artifact exists for ``spec``.
            InstallError: the copy was denied.
        """
        if spec.builtin:
            path = self.cache_builtin(spec)
        else:
            path = self.tiers.cached_path(spec)
        if path is None:
            raise PackageNotFound(f"Missing artifact file '{spec.file_name}'.")
        target_dir = (Path(custom_path) / Constants.DEFAULT_APP_CACHE) if custom_path else self.settings.app_cache_path
        if path.parent.resolve() == target_dir.resolve():
            return None
        self.reporter.info(f"  * {path.name}")
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target = target_dir / path.name
            shutil.copy2(path, target)
        except PermissionError as exc:
            logger.debug("Cache copy denied: %s", exc)
            raise InstallError(str(exc)) from exc
        return target

    def cache_builtin(self, spec: Specification) -> Optional[Path]:
        """Locate or fetch an artifact for a package bundled with the host runtime."""
        path = self.tiers.cached_path(spec)
        if path is not None:
            return path
        remote_spec = next(iter(self.remote_specs.search(spec)), None)
        if remote_spec is not None and remote_spec.remote is not None:
            return self.installer.fetch_artifact(remote_spec)
        self.reporter.warn(
            f"{spec.full_name} is built in to the runtime, and can't be cached because "
            "none of your sources contain it."
        )
        return None
