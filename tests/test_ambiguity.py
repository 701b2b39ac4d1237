"""Tests for the ambiguous-source log."""

from depfetch.ambiguity import AmbiguityTracker


def test_one_record_per_name():
    tracker = AmbiguityTracker()
    assert tracker.record("p", "https://a/", ["https://a/", "https://b/"]) is True
    assert tracker.record("p", "https://a/", ["https://c/"]) is False
    assert len(tracker) == 1
    assert tracker.records[0].also_found_in == ("https://b/",)


def test_single_source_is_not_recorded():
    tracker = AmbiguityTracker()
    assert tracker.record("p", "https://a/", ["https://a/"]) is False
    assert not tracker


def test_warning_lines():
    tracker = AmbiguityTracker()
    tracker.record("p", "https://a/", ["https://b/", "https://c/"])
    lines = tracker.warning_lines()
    assert lines[0] == "Warning: the package 'p' was found in multiple sources."
    assert "Installed from: https://a/" in lines
    assert "  * https://b/" in lines and "  * https://c/" in lines
    assert "    depfetch install p --source https://a/" in lines
