"""Tests for adaptive registry aggregation."""

import pytest

from depfetch.constants import Constants
from depfetch.errors import ErrorKind, NoSourcesError, PackageNotFound
from depfetch.source import RegistrySource

from conftest import FakeRegistry, FakeTransport, record


def _source(make_context, *registries, **overrides):
    transport = FakeTransport(*registries)
    source = RegistrySource(make_context(transport, **overrides), [r.remote.uri for r in registries])
    source.allow_remote()
    return source, transport


class TestThreshold:
    """Switching between the incremental API and full indexes."""

    def test_large_bulk_index_disables_api(self, make_context):
        bulk = FakeRegistry("https://bulk.example.org",
                            [record("pkg%d" % i) for i in range(Constants.REQUEST_LIMIT + 100)], api=False)
        api = FakeRegistry("https://api.example.org", [record("p")])
        source, transport = _source(make_context, bulk, api)
        source.dependency_names.add("p")
        idx = source.remote_specs
        assert "p" in idx
        assert transport.calls_to(api)[-1][0] == api.remote.join(Constants.BULK_INDEX_PATH)
        assert not any(params for _, params in transport.calls_to(api))

    def test_too_many_requested_names_disables_api(self, make_context):
        api = FakeRegistry("https://api.example.org", [record("p")])
        source, transport = _source(make_context, api)
        source.dependency_names.update("n%d" % i for i in range(Constants.REQUEST_LIMIT))
        assert "p" in source.remote_specs
        assert not any(params for _, params in transport.calls)

    def test_exactly_request_limit_specs_disables_api(self, make_context):
        bulk = FakeRegistry("https://bulk.example.org",
                            [record("pkg%d" % i) for i in range(Constants.REQUEST_LIMIT)], api=False)
        api = FakeRegistry("https://api.example.org", [record("p")])
        source, transport = _source(make_context, bulk, api)
        source.dependency_names.add("p")
        assert "p" in source.remote_specs
        assert not any(params for _, params in transport.calls_to(api))
        assert transport.calls_to(api)[-1][0] == api.remote.join(Constants.BULK_INDEX_PATH)

    def test_one_below_request_limit_keeps_api(self, make_context):
        bulk = FakeRegistry("https://bulk.example.org",
                            [record("pkg%d" % i) for i in range(Constants.REQUEST_LIMIT - 1)], api=False)
        api = FakeRegistry("https://api.example.org", [record("p"), record("unrelated")])
        source, transport = _source(make_context, bulk, api)
        source.dependency_names.add("p")
        idx = source.remote_specs
        assert "p" in idx
        assert "unrelated" not in idx
        assert any(params for _, params in transport.calls_to(api))
        assert not any(url.endswith(Constants.BULK_INDEX_PATH) for url, _ in transport.calls_to(api))

    def test_small_index_uses_api(self, make_context):
        api = FakeRegistry("https://api.example.org", [record("p"), record("unrelated")])
        source, transport = _source(make_context, api)
        source.dependency_names.add("p")
        assert source.remote_specs.names() == {"p"}
        assert not any(url.endswith(Constants.BULK_INDEX_PATH) for url, _ in transport.calls)

    def test_incremental_disabled_globally(self, make_context):
        api = FakeRegistry("https://api.example.org", [record("p"), record("q")])
        source, transport = _source(make_context, api, incremental=False)
        source.dependency_names.add("p")
        assert source.remote_specs.names() == {"p", "q"}
        assert [url for url, _ in transport.calls] == [api.remote.join(Constants.BULK_INDEX_PATH)]


class TestFixpoint:
    """Cross-registry dependency discovery."""

    def test_dependencies_found_across_registries(self, make_context):
        a = FakeRegistry("https://a.example.org", [record("p", dependencies=["q"]), record("r")])
        b = FakeRegistry("https://b.example.org", [record("q", dependencies=["r"])])
        source, _ = _source(make_context, a, b)
        source.dependency_names.add("p")
        assert source.remote_specs.names() == {"p", "q", "r"}
        assert source.remote_specs.unmet_dependency_names == set()

    def test_unmet_dependencies_are_queried_once_more(self, make_context):
        a = FakeRegistry("https://a.example.org", [record("p", dependencies=["x"])])
        b = FakeRegistry("https://b.example.org", [])
        source, transport = _source(make_context, a, b)
        source.dependency_names.add("p")
        idx = source.remote_specs
        assert idx.unmet_dependency_names == {"x"}
        assert len(transport.calls_to(a, names="x")) == 2
        assert len(transport.calls_to(b, names="x")) == 2
        assert source.unmet_deps() == {"x"}

    def test_first_registry_wins_and_duplicates_are_remembered(self, make_context):
        a = FakeRegistry("https://a.example.org", [record("p")])
        b = FakeRegistry("https://b.example.org", [record("p")])
        source, _ = _source(make_context, a, b)
        source.dependency_names.add("p")
        idx = source.remote_specs
        assert idx.search("p")[0].remote == a.remote
        assert [s.remote for s in idx.search_all("p")] == [a.remote, b.remote]

    def test_concurrent_fetch_matches_sequential(self, make_context):
        def registries():
            return (
                FakeRegistry("https://a.example.org", [record("p", dependencies=["q"]), record("s")]),
                FakeRegistry("https://b.example.org", [record("q", dependencies=["s"]), record("p", "2.0")]),
                FakeRegistry("https://c.example.org", [record("t")], api=False),
            )
        sequential, _ = _source(make_context, *registries())
        concurrent, _ = _source(make_context, *registries(), jobs=4)
        for source in (sequential, concurrent):
            source.dependency_names.add("p")
        assert sequential.remote_specs == concurrent.remote_specs
        assert [s.remote for s in concurrent.remote_specs.search_all("p")] == \
            [s.remote for s in sequential.remote_specs.search_all("p")]


class TestFailures:
    """Unreachable registries degrade the run instead of aborting it."""

    def test_failing_registry_is_recorded_and_skipped(self, make_context):
        down = FakeRegistry("https://down.example.org", [record("p")], down=True)
        up = FakeRegistry("https://up.example.org", [record("p", "2.0")])
        source, transport = _source(make_context, down, up)
        source.dependency_names.add("p")
        idx = source.remote_specs
        assert [str(s.version) for s in idx.search("p")] == ["2.0"]
        assert len(source.fetch_failures) == 1
        failure = source.fetch_failures[0]
        assert failure.remote == down.remote
        assert failure.kind is ErrorKind.REGISTRY_UNAVAILABLE
        assert len(transport.calls_to(down)) == 2
        assert any("down.example.org" in m for m in source.reporter.messages("warn"))

    def test_every_registry_down(self, make_context):
        down = FakeRegistry("https://down.example.org", [record("p")], down=True)
        source, _ = _source(make_context, down)
        source.dependency_names.add("p")
        assert source.remote_specs.size == 0
        with pytest.raises(PackageNotFound) as excinfo:
            source.find("p")
        assert not isinstance(excinfo.value, NoSourcesError)

    def test_malformed_record_does_not_discard_other_registries(self, make_context):
        bad = record("p")
        bad["dependencies"] = 5
        a = FakeRegistry("https://a.example.org", [bad, record("s")])
        b = FakeRegistry("https://b.example.org", [record("q")])
        source, _ = _source(make_context, a, b)
        source.dependency_names.update({"p", "q", "s"})
        idx = source.remote_specs
        assert idx.names() == {"q", "s"}
        assert source.fetch_failures == []


class TestMergedView:
    """Remote specs merged with the cache tiers."""

    def test_no_registries(self, make_context):
        source, transport = _source(make_context)
        assert source.remote_specs.size == 0
        assert source.specs.names() == {Constants.SELF_NAME}
        assert transport.calls == []
        with pytest.raises(NoSourcesError) as excinfo:
            source.find("p")
        assert "source" in excinfo.value.hint

    def test_remote_specs_excluded_unless_allowed(self, make_context):
        api = FakeRegistry("https://api.example.org", [record("p")])
        transport = FakeTransport(api)
        source = RegistrySource(make_context(transport), [api.remote.uri])
        source.dependency_names.add("p")
        assert "p" not in source.specs
        assert transport.calls == []

    def test_find_picks_highest_version(self, make_context):
        api = FakeRegistry("https://api.example.org", [record("p", "1.0"), record("p", "1.10"), record("p", "1.9")])
        source, _ = _source(make_context, api)
        source.dependency_names.add("p")
        assert str(source.find("p").version) == "1.10"
        assert str(source.find("p", "1.9").version) == "1.9"
        with pytest.raises(PackageNotFound):
            source.find("p", "7.0")
