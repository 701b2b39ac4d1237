"""Shared fixtures: an in-memory registry transport and artifact helpers."""

import shutil
from pathlib import Path

import pytest

from depfetch.artifact import build_artifact
from depfetch.constants import Constants
from depfetch.context import InstallContext, Reporter
from depfetch.errors import RegistryUnavailable
from depfetch.models import Specification
from depfetch.remote import Remote
from depfetch.settings import Settings


def record(name, version="1.0", dependencies=(), **extra):
    """Registry record as served by the index endpoints."""
    data = {"name": name, "version": version, "dependencies": list(dependencies)}
    data.update(extra)
    return data


class FakeRegistry:
    """One registry served from memory."""

    def __init__(self, uri, records=(), api=True, down=False):
        self.remote = Remote(uri)
        self.records = list(records)
        self.api = api
        self.down = down
        self.artifacts = {}

    def publish(self, directory, name, version="1.0", files=None, checksums=True, **fields):
        """Build an artifact and serve it from ``packages/``."""
        spec = Specification(name=name, version=version, **fields)
        path = build_artifact(spec, files or {"lib/%s.txt" % name: name}, Path(directory), checksums=checksums)
        self.artifacts[path.name] = path
        return path


class FakeTransport:
    """Stands in for ``HttpTransport``; records every call."""

    def __init__(self, *registries):
        self.registries = list(registries)
        self.calls = []
        self.downloads = []
        self.closed = False

    def _registry(self, url):
        for registry in self.registries:
            if url.startswith(registry.remote.uri):
                return registry
        raise AssertionError("unexpected URL %s" % url)

    def get_json(self, url, *, remote=None, params=None):
        self.calls.append((url, dict(params or {})))
        registry = self._registry(url)
        if registry.down:
            raise RegistryUnavailable(remote, "connection refused")
        path = url[len(registry.remote.uri):]
        if path == Constants.BULK_INDEX_PATH:
            return 200, list(registry.records)
        if path == Constants.DEPENDENCY_API_PATH:
            if not registry.api:
                return 404, None
            if not params:
                return 200, []
            names = params["names"].split(",")
            return 200, [r for r in registry.records if r["name"] in names]
        return 404, None

    def download(self, url, dest, *, remote=None):
        self.downloads.append(url)
        registry = self._registry(url)
        if registry.down:
            raise RegistryUnavailable(remote, "connection refused")
        src = registry.artifacts.get(url.rsplit("/", 1)[1])
        if src is None:
            raise RegistryUnavailable(remote, "download of %s failed (HTTP 404)" % url.rsplit("/", 1)[1])
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
        return dest

    def close(self):
        self.closed = True

    def calls_to(self, registry, names=None):
        """Calls made to ``registry``; with ``names``, only incremental queries for them."""
        found = [c for c in self.calls if c[0].startswith(registry.remote.uri)]
        if names is not None:
            found = [c for c in found if c[1].get("names") == names]
        return found


@pytest.fixture
def settings(tmp_path):
    (tmp_path / "tmp").mkdir()
    return Settings(
        root=tmp_path / "project",
        install_path=tmp_path / "install",
        global_cache_path=tmp_path / "global",
        tmp_root=tmp_path / "tmp",
        sudo=False,
    )


@pytest.fixture
def artifacts_dir(tmp_path):
    return tmp_path / "published"


@pytest.fixture
def make_context(settings):
    def _make(transport, **overrides):
        return InstallContext(
            settings=settings.with_overrides(**overrides) if overrides else settings,
            reporter=Reporter(),
            transport=transport,
        )
    return _make
