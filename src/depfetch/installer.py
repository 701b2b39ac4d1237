"""Package installation.

``PackageInstaller`` materialises one artifact into an install root.
``Installer`` wraps it with the decisions made per package: reuse an
existing install, download from a registry, re-derive metadata from the
downloaded artifact, and install directly or through a privileged staging
copy when the install root is not writable.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional

import yaml

from depfetch.artifact import extract_artifact, read_specification
from depfetch.common.logging_utils import Timer, extra_context
from depfetch.common.memo import is_computed
from depfetch.constants import Constants
from depfetch.errors import InstallPermissionError, PackageNotFound
from depfetch.models import Specification
from depfetch.settings import Settings

if TYPE_CHECKING:
    from depfetch.source import RegistrySource

logger = logging.getLogger(__name__)


def version_message(spec: Specification) -> str:
    message = f"{spec.name} {spec.version}"
    if spec.platform != Constants.DEFAULT_PLATFORM:
        message += f" ({spec.platform})"
    return message


@contextmanager
def staging_directory(settings: Settings, label: str) -> Iterator[Path]:
    """Temporary directory that is removed on exit, whatever happened inside."""
    path = Path(tempfile.mkdtemp(prefix=f"depfetch-{label}-", dir=settings.tmp_root))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("Could not remove staging directory %s", path)


@dataclass
class InstallResult:
    specification: Specification
    post_install_message: Optional[str] = None
    installed: bool = False


class PackageInstaller:
    """Unpacks one artifact into ``install_dir`` and links its executables into ``bin_dir``."""

    def __init__(self, artifact: Path, install_dir: Path, bin_dir: Path, trust_policy: Optional[str] = None):
        self.artifact = Path(artifact)
        self.install_dir = Path(install_dir)
        self.bin_dir = Path(bin_dir)
        self.trust_policy = trust_policy

    def install(self) -> Specification:
        spec = read_specification(self.artifact, self.trust_policy)
        package_dir = self.install_dir / Constants.PACKAGES_DIR / spec.full_name
        spec = self._extract(package_dir)

        cache_dir = self.install_dir / Constants.CACHE_DIR
        cache_dir.mkdir(parents=True, exist_ok=True)
        cached = cache_dir / self.artifact.name
        if not cached.exists() or not os.path.samefile(cached, self.artifact):
            shutil.copy2(self.artifact, cached)

        for executable in spec.executables:
            src = package_dir / Constants.BIN_DIR / executable
            if not src.is_file():
                logger.warning("Executable %s is missing from %s", executable, spec.full_name)
                continue
            self.bin_dir.mkdir(parents=True, exist_ok=True)
            target = self.bin_dir / executable
            shutil.copy2(src, target)
            target.chmod(0o755)

        # Written last: a package counts as installed once its metadata exists.
        spec_dir = self.install_dir / Constants.SPECIFICATIONS_DIR
        spec_dir.mkdir(parents=True, exist_ok=True)
        metadata = spec_dir / f"{spec.full_name}.yaml"
        with open(metadata, "w", encoding="utf-8") as fh:
            yaml.safe_dump(spec.to_dict(), fh, sort_keys=True)
        spec.loaded_from = str(metadata)
        return spec

    def _extract(self, package_dir: Path) -> Specification:
        """Unpack beside ``package_dir`` and swap it in once extraction succeeds."""
        package_dir.parent.mkdir(parents=True, exist_ok=True)
        fresh = Path(tempfile.mkdtemp(prefix=f".{package_dir.name}.", dir=package_dir.parent))
        fresh.chmod(0o755)
        try:
            spec = extract_artifact(self.artifact, fresh, self.trust_policy)
        except Exception:
            shutil.rmtree(fresh, ignore_errors=True)
            raise
        if package_dir.exists():
            retired = fresh.with_name(fresh.name + ".old")
            package_dir.rename(retired)
            fresh.rename(package_dir)
            shutil.rmtree(retired, ignore_errors=True)
        else:
            fresh.rename(package_dir)
        return spec


class Installer:
    """Installs specifications produced by a ``RegistrySource``."""

    def __init__(self, source: "RegistrySource"):
        self.source = source
        self.context = source.context
        self.settings = source.context.settings
        self.reporter = source.context.reporter
        self.tiers = source.tiers

    def metadata_path(self, spec: Specification) -> Path:
        return self.settings.install_path / Constants.SPECIFICATIONS_DIR / f"{spec.full_name}.yaml"

    def install(self, spec: Specification, force: bool = False, ensure_builtin_cached: bool = False) -> InstallResult:
        """Install ``spec`` unless it is already installed.

        Raises:
            PackageNotFound: no artifact could be located.
            RegistryUnavailable: the artifact download failed.
            InstallError: unpacking or the privileged copy failed.
            UntrustedArtifact: the artifact failed the trust policy.
        """
        cached = self.tiers.cached_path(spec)
        if ensure_builtin_cached and spec.builtin:
            if cached is None:
                if spec.remote is None:
                    self.source.cache_builtin(spec)
                force = True
            else:
                spec.loaded_from = str(self.metadata_path(spec))

        if self.tiers.installed(spec) and (not force or spec.name == Constants.SELF_NAME):
            self.reporter.debug(f"Using {version_message(spec)}")
            self.context.using.append(spec)
            return InstallResult(spec)

        if cached is not None:
            self.tiers.cache_globally(cached, spec.remote)

        artifact: Optional[Path] = None
        if spec.remote is not None:
            self._record_ambiguity(spec)
            artifact = self.fetch_artifact(spec)
            derived = read_specification(artifact, self.settings.trust_policy)
            spec = self.source.replace_spec(spec, spec.rederive(derived))

        installed = False
        if not self.settings.no_install:
            message = f"Installing {version_message(spec)}"
            if spec.extensions:
                message += " with native extensions"
            self.reporter.confirm(message)
            if artifact is None:
                artifact = self.cached_artifact(spec)
            with Timer() as t:
                if self.context.requires_elevation():
                    self._install_elevated(spec, artifact)
                else:
                    self._install_direct(artifact)
            installed = True
            if is_computed(self.tiers, "installed_specs"):
                self.tiers.installed_specs.add(spec)
            logger.info(
                "Installed %s",
                spec.full_name,
                extra=extra_context(
                    event="install", component="installer", outcome="success",
                    target=spec.full_name, duration_ms=t.duration_ms(),
                ),
            )

        spec.loaded_from = str(self.metadata_path(spec))
        self.context.installed.append(spec)
        if spec.post_install_message:
            self.context.post_install_messages[spec.name] = spec.post_install_message
        return InstallResult(spec, spec.post_install_message, installed)

    def cached_artifact(self, spec: Specification) -> Path:
        path = self.tiers.cached_path(spec)
        if path is None:
            raise PackageNotFound(f"Could not find {spec.file_name} for installation")
        return path

    def fetch_artifact(self, spec: Specification) -> Path:
        """Download ``spec``'s artifact into the install cache and the global cache."""
        fetcher = self.source.fetcher_for(spec.remote)
        install_cache = self.settings.install_cache_path
        if self.context.requires_elevation():
            with staging_directory(self.settings, spec.full_name) as staging:
                downloaded = fetcher.download(spec, staging / Constants.CACHE_DIR)
                self.tiers.cache_globally(downloaded, spec.remote)
                target = install_cache / downloaded.name
                with self.context.path_locks.for_path(install_cache):
                    self.context.elevator.mkdir_p(install_cache)
                    self.context.elevator.move(downloaded, target)
            return target
        try:
            downloaded = fetcher.download(spec, install_cache)
        except PermissionError as exc:
            raise InstallPermissionError(
                f"Permission denied writing {spec.file_name} to {install_cache}",
                hint="Install into a writable --path, or allow elevation.",
            ) from exc
        self.tiers.cache_globally(downloaded, spec.remote)
        return downloaded

    def _install_direct(self, artifact: Path) -> Specification:
        installer = PackageInstaller(
            artifact, self.settings.install_path, self.settings.bin_dir, self.settings.trust_policy
        )
        try:
            return installer.install()
        except PermissionError as exc:
            raise InstallPermissionError(
                f"Permission denied while installing into {self.settings.install_path}: {exc}",
                hint="Install into a writable --path, or allow elevation.",
            ) from exc

    def _install_elevated(self, spec: Specification, artifact: Path) -> None:
        with staging_directory(self.settings, spec.full_name) as staging:
            PackageInstaller(
                artifact, staging, staging / Constants.BIN_DIR, self.settings.trust_policy
            ).install()
            self._privileged_copy(spec, staging)

    def _privileged_copy(self, spec: Specification, staging: Path) -> None:
        elevator = self.context.elevator
        locks = self.context.path_locks
        for name in Constants.REPOSITORY_SUBDIRECTORIES:
            children: List[Path] = sorted((staging / name).iterdir()) if (staging / name).is_dir() else []
            if not children:
                continue
            dest = self.settings.install_path / name
            with locks.for_path(dest):
                elevator.mkdir_p(dest)
                elevator.copy_into(children, dest)
        executables = [
            staging / Constants.BIN_DIR / exe
            for exe in spec.executables
            if (staging / Constants.BIN_DIR / exe).is_file()
        ]
        if executables:
            with locks.for_path(self.settings.bin_dir):
                elevator.mkdir_p(self.settings.bin_dir)
                elevator.copy_into(executables, self.settings.bin_dir)

    def _record_ambiguity(self, spec: Specification) -> None:
        offers = [s.remote.anonymized_uri for s in self.source.specs.search_all(spec.name) if s.remote]
        recorded = self.context.ambiguities.record(spec.name, spec.remote.anonymized_uri, offers)
        if recorded:
            logger.debug(
                "Package offered by several registries",
                extra=extra_context(event="ambiguity", component="installer", target=spec.name),
            )
