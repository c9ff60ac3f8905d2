"""
tests/test_detection_summary.py

Running aggregate: per-event vs per-match counting, buckets, authors, times.
"""

from __future__ import annotations

import datetime
import io

import pytest

from detection_output import (
    DetectionSummary,
    OutputSinkSet,
    Profile,
    Severity,
    SigmaRule,
    SummaryStateError,
    parse_event_time,
    process_event,
)

T0 = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)


@pytest.fixture()
def summary() -> DetectionSummary:
    return DetectionSummary()


def test_empty_summary(summary) -> None:
    assert summary.total_events == 0
    assert summary.event_with_hits == 0
    assert summary.level_hits == {}
    assert summary.timestamps == ()
    assert summary.first_event_time is None


def test_single_hit_updates_every_bucket(summary) -> None:
    summary.record_event()
    summary.record_hit(T0, "high", "Suspicious API Call", "alice")
    assert summary.level_hits[Severity.HIGH]["Suspicious API Call"] == 1
    assert summary.date_hits[Severity.HIGH]["2024-01-02"] == 1
    assert "Suspicious API Call" in summary.author_titles["alice"]
    assert summary.timestamps == (int(T0.timestamp()),)
    assert summary.first_event_time == summary.last_event_time == T0


def test_event_matching_many_rules_counts_once(summary) -> None:
    summary.record_event()
    summary.record_hit(T0, "high", "Rule A", "alice")
    summary.record_hit(T0, "high", "Rule B", "alice")
    summary.record_hit(T0, "low", "Rule C", "bob")
    assert summary.event_with_hits == 1
    assert sum(summary.level_hits[Severity.HIGH].values()) == 2
    assert len(summary.timestamps) == 3


def test_event_with_hits_never_exceeds_total(summary) -> None:
    for hits in (0, 2, 0, 1, 3):
        summary.record_event()
        for i in range(hits):
            summary.record_hit(T0, "medium", f"Rule {i}", None)
    assert summary.total_events == 5
    assert summary.event_with_hits == 3
    assert summary.event_with_hits <= summary.total_events


def test_hit_before_event_is_rejected(summary) -> None:
    with pytest.raises(SummaryStateError):
        summary.record_hit(T0, "high", "Rule", "alice")


def test_authors_split_and_deduplicated(summary) -> None:
    summary.record_event()
    summary.record_hit(T0, "high", "Rule A", "alice, bob")
    summary.record_hit(T0, "high", "Rule A", ["alice", " carol "])
    summary.record_hit(T0, "high", "Rule B", "alice")
    assert summary.author_titles == {
        "alice": {"Rule A", "Rule B"},
        "bob":   {"Rule A"},
        "carol": {"Rule A"},
    }
    assert summary.author_counts() == {"alice": 2, "bob": 1, "carol": 1}


def test_rule_without_author_credits_nobody(summary) -> None:
    summary.record_event()
    summary.record_hit(T0, "high", "Rule A", None)
    assert summary.author_titles == {}


def test_levels_parsed_case_insensitively_and_by_abbreviation(summary) -> None:
    summary.record_event()
    summary.record_hit(T0, "Critical", "A", None)
    summary.record_hit(T0, "crit", "B", None)
    summary.record_hit(T0, Severity.MEDIUM, "C", None)
    assert set(summary.level_hits[Severity.CRITICAL]) == {"A", "B"}
    assert summary.level_hits[Severity.MEDIUM] == {"C": 1}


def test_unknown_level_counted_as_informational(summary, caplog) -> None:
    summary.record_event()
    summary.record_hit(T0, "bogus", "Odd Rule", None)
    summary.record_hit(T0, None, "No Level", None)
    assert summary.level_hits[Severity.INFORMATIONAL] == {"Odd Rule": 1, "No Level": 1}
    assert "unknown level" in caplog.text


def test_first_and_last_event_time_extend(summary) -> None:
    later   = T0 + datetime.timedelta(days=3)
    earlier = T0 - datetime.timedelta(hours=5)
    summary.record_event()
    summary.record_hit(T0, "low", "A", None)
    summary.record_hit(later, "low", "A", None)
    summary.record_hit(earlier, "low", "A", None)
    assert summary.first_event_time == earlier
    assert summary.last_event_time == later
    assert summary.date_hits[Severity.LOW] == {"2024-01-01": 1, "2024-01-02": 1, "2024-01-05": 1}


def test_hit_without_time_skips_time_buckets(summary) -> None:
    summary.record_event()
    summary.record_hit(None, "low", "A", None)
    assert summary.level_hits[Severity.LOW] == {"A": 1}
    assert summary.date_hits == {}
    assert summary.timestamps == ()


def test_accessors_return_copies(summary) -> None:
    summary.record_event()
    summary.record_hit(T0, "high", "A", "alice")
    summary.level_hits[Severity.HIGH]["A"] = 99
    summary.author_titles["alice"].add("Injected")
    assert summary.level_hits[Severity.HIGH]["A"] == 1
    assert summary.author_titles["alice"] == {"A"}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-01-02T03:04:05Z", T0),
        ("2024-01-02T03:04:05", T0),
        ("2024-01-02T05:04:05+02:00", T0),
        ("not a time", None),
        (None, None),
        (1704164645, None),
    ],
)
def test_parse_event_time(value, expected) -> None:
    assert parse_event_time(value) == expected


def test_process_event_drives_sinks_and_summary(event) -> None:
    profile = Profile([("RuleTitle", "sigma.title")])
    summary = DetectionSummary()
    rules = [
        SigmaRule(title="Rule A", level="high", author="alice"),
        SigmaRule(title="Rule B", level="low", author="bob"),
    ]
    buf = io.StringIO()
    with OutputSinkSet(profile, stream=buf, no_color=True) as sinks:
        assert process_event(event, rules, sinks, summary) == 2
        assert process_event({"eventName": "Describe"}, [], sinks, summary) == 0
    assert buf.getvalue() == "Rule A\n\nRule B\n\n"
    assert summary.total_events == 2
    assert summary.event_with_hits == 1
    assert summary.date_hits[Severity.HIGH] == {"2024-01-02": 1}
