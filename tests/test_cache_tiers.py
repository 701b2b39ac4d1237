"""Tests for the installed, local and global cache tiers."""

import logging

import pytest
import yaml

from depfetch.artifact import build_artifact
from depfetch.cache import CacheTiers
from depfetch.constants import Constants, VERSION
from depfetch.models import Specification
from depfetch.remote import Remote


def _installed(settings, name, version):
    spec_dir = settings.install_path / "specifications"
    spec_dir.mkdir(parents=True, exist_ok=True)
    path = spec_dir / f"{name}-{version}.yaml"
    path.write_text(yaml.safe_dump({"name": name, "version": version}))
    return path


class TestInstalledTier:
    """Specifications of packages already installed."""

    def test_self_package_is_always_present(self, settings):
        tiers = CacheTiers(settings)
        found = tiers.installed_specs.search(Constants.SELF_NAME)
        assert [str(s.version) for s in found] == [VERSION]

    def test_other_self_versions_are_ignored(self, settings):
        _installed(settings, Constants.SELF_NAME, "0.0.1")
        tiers = CacheTiers(settings)
        assert [str(s.version) for s in tiers.installed_specs.search(Constants.SELF_NAME)] == [VERSION]

    def test_installed_metadata_is_loaded(self, settings):
        path = _installed(settings, "p", "1.0")
        tiers = CacheTiers(settings)
        spec = tiers.installed_specs.search("p")[0]
        assert spec.loaded_from == str(path)
        assert tiers.installed(Specification(name="p", version="1.0"))

    def test_builtin_specifications_are_flagged(self, settings, tmp_path):
        builtin = tmp_path / "builtin"
        builtin.mkdir()
        (builtin / "json-2.0.yaml").write_text(yaml.safe_dump({"name": "json", "version": "2.0"}))
        tiers = CacheTiers(settings.with_overrides(builtin_specification_dir=builtin))
        assert tiers.installed_specs.search("json")[0].builtin is True

    def test_unreadable_metadata_is_skipped(self, settings, caplog):
        spec_dir = settings.install_path / "specifications"
        spec_dir.mkdir(parents=True)
        (spec_dir / "broken.yaml").write_text("name: [unterminated")
        with caplog.at_level(logging.WARNING):
            idx = CacheTiers(settings).installed_specs
        assert "broken.yaml" in caplog.text
        assert idx.names() == {Constants.SELF_NAME}

    def test_metadata_with_bad_field_types_is_skipped(self, settings, caplog):
        spec_dir = settings.install_path / "specifications"
        spec_dir.mkdir(parents=True)
        (spec_dir / "x-1.0.yaml").write_text(yaml.safe_dump({"name": "x", "version": "1.0", "dependencies": 5}))
        _installed(settings, "y", "1.0")
        with caplog.at_level(logging.WARNING):
            idx = CacheTiers(settings).installed_specs
        assert "x-1.0.yaml" in caplog.text
        assert idx.names() == {Constants.SELF_NAME, "y"}


class TestArtifactTiers:
    """Local and global artifact caches."""

    def test_local_tier_includes_app_cache_and_global_cache(self, settings):
        remote = Remote("https://a.example.org")
        build_artifact(Specification(name="p", version="1.0"), {}, settings.app_cache_path)
        build_artifact(Specification(name="q", version="1.0"), {},
                       settings.global_cache_path / remote.cache_slug)
        tiers = CacheTiers(settings)
        assert {"p", "q"} <= tiers.cached_specs.names()
        assert "p" not in tiers.globally_cached_specs.names()
        assert "q" in tiers.globally_cached_specs.names()

    def test_corrupt_artifact_is_skipped(self, settings, caplog):
        settings.app_cache_path.mkdir(parents=True)
        (settings.app_cache_path / "bad-1.0.pkg").write_bytes(b"garbage")
        with caplog.at_level(logging.WARNING):
            idx = CacheTiers(settings).cached_specs
        assert "bad" not in idx.names()
        assert "bad-1.0.pkg" in caplog.text

    def test_specifications_by_tier_name(self, settings):
        tiers = CacheTiers(settings)
        assert tiers.specifications("installed") is tiers.installed_specs
        assert tiers.specifications("local") is tiers.cached_specs
        assert tiers.specifications("global") is tiers.globally_cached_specs
        with pytest.raises(ValueError):
            tiers.specifications("remote")

    def test_tiers_are_computed_once(self, settings):
        tiers = CacheTiers(settings)
        first = tiers.cached_specs
        build_artifact(Specification(name="late", version="1.0"), {}, settings.app_cache_path)
        assert tiers.cached_specs is first
        assert "late" not in tiers.cached_specs.names()


class TestCachePaths:
    """Artifact lookup order and global cache population."""

    def test_app_cache_wins(self, settings):
        spec = Specification(name="p", version="1.0")
        app = build_artifact(spec, {}, settings.app_cache_path)
        build_artifact(spec, {}, settings.install_cache_path)
        assert CacheTiers(settings).cached_path(spec) == app

    def test_global_cache_for_remote(self, settings):
        remote = Remote("https://a.example.org")
        spec = Specification(name="p", version="1.0", remote=remote)
        path = build_artifact(spec, {}, settings.global_cache_path / remote.cache_slug)
        assert CacheTiers(settings).cached_path(spec) == path
        assert CacheTiers(settings).cached_path(Specification(name="p", version="2.0")) is None

    def test_cache_globally(self, settings, tmp_path):
        remote = Remote("https://a.example.org")
        artifact = build_artifact(Specification(name="p", version="1.0"), {}, tmp_path / "dl")
        tiers = CacheTiers(settings)
        target = tiers.cache_globally(artifact, remote)
        assert target == settings.global_cache_path / remote.cache_slug / "p-1.0.pkg"
        assert target.read_bytes() == artifact.read_bytes()
        assert tiers.cache_globally(artifact, remote) == target

    def test_global_cache_searched_before_install_cache(self, settings):
        remote = Remote("https://a.example.org")
        spec = Specification(name="p", version="1.0", remote=remote)
        build_artifact(spec, {}, settings.install_cache_path)
        global_copy = build_artifact(spec, {}, settings.global_cache_path / remote.cache_slug)
        assert CacheTiers(settings).cache_dirs(spec)[-1] == settings.install_cache_path
        assert CacheTiers(settings).cached_path(spec) == global_copy
