"""
tests/test_field_extractor.py

Expression resolution against (event, rule, geo).
"""

from __future__ import annotations

import pytest

from conftest import FakeGeo
from detection_output import FieldExtractor, Profile, SigmaRule


@pytest.fixture()
def extractor() -> FieldExtractor:
    return FieldExtractor()


# ---------------------------------------------------------------------------
# Event fields
# ---------------------------------------------------------------------------


def test_event_time_rendered_without_t_and_z(extractor, event, rule) -> None:
    assert extractor.resolve(".eventTime", event, rule) == "2024-01-02 03:04:05"


def test_top_level_field(extractor, event, rule) -> None:
    assert extractor.resolve(".eventName", event, rule) == "ConsoleLogin"


def test_nested_field_path(extractor, event, rule) -> None:
    assert extractor.resolve(".userIdentity.userName", event, rule) == "alice"


def test_flat_dotted_key(extractor, rule) -> None:
    assert extractor.resolve(".userIdentity.arn", {"userIdentity.arn": "arn:x"}, rule) == "arn:x"


def test_missing_field_is_placeholder(extractor, event, rule) -> None:
    assert extractor.resolve(".errorCode", event, rule) == "-"
    assert extractor.resolve(".userIdentity.arn", event, rule) == "-"


def test_null_field_is_placeholder(extractor, rule) -> None:
    assert extractor.resolve(".errorCode", {"errorCode": None}, rule) == "-"


def test_non_string_values(extractor, event, rule) -> None:
    assert extractor.resolve(".readOnly", event, rule) == "false"
    assert extractor.resolve(".userIdentity", event, rule) == (
        '{"type":"IAMUser","userName":"alice","accountId":"123456789012"}'
    )


# ---------------------------------------------------------------------------
# Rule metadata
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("sigma.title", "Suspicious API Call"),
        ("sigma.id", "0b1c2d3e-0000-4000-8000-000000000001"),
        ("sigma.status", "experimental"),
        ("sigma.level", "high"),
        ("sigma.author", "alice, bob"),
        ("sigma.description", "Detects a suspicious API call"),
        ("sigma.references", '["https://example.com/a", "https://example.com/b"]'),
        ("sigma.date", "2024-01-01"),
        ("sigma.tags", '["attack.t1078"]'),
        ("sigma.falsepositives", '["Unknown"]'),
        ("sigma.modified", "-"),
        ("sigma.nonexistent", "-"),
    ],
)
def test_rule_metadata(extractor, event, rule, expression, expected) -> None:
    assert extractor.resolve(expression, event, rule) == expected


def test_absent_optional_metadata_is_placeholder(extractor, event) -> None:
    bare = SigmaRule(title="Bare")
    for name in ("id", "status", "author", "references", "tags", "level"):
        assert extractor.resolve(f"sigma.{name}", event, bare) == "-"


def test_author_list_joined(extractor, event) -> None:
    r = SigmaRule(title="T", author=["alice", "bob"])
    assert extractor.resolve("sigma.author", event, r) == "alice, bob"


def test_unknown_expression_is_placeholder(extractor, event, rule) -> None:
    assert extractor.resolve("eventName", event, rule) == "-"
    assert extractor.resolve("", event, rule) == "-"


# ---------------------------------------------------------------------------
# Geo branch
# ---------------------------------------------------------------------------


def test_geo_columns_for_known_ip(event, rule, geo) -> None:
    ex = FieldExtractor(geo)
    assert ex.resolve("SrcASN", event, rule) == "AS64500 Example Net"
    assert ex.resolve("SrcCity", event, rule) == "Tokyo"
    assert ex.resolve("SrcCountry", event, rule) == "Japan"


def test_known_ip_falls_through_for_other_columns(event, rule, geo) -> None:
    ex = FieldExtractor(geo)
    assert ex.resolve(".eventName", event, rule) == "ConsoleLogin"
    assert ex.resolve("sigma.title", event, rule) == "Suspicious API Call"


def test_unresolved_ip_returned_for_every_column(event, rule) -> None:
    event["sourceIPAddress"] = "8.8.8.8"
    ex = FieldExtractor(FakeGeo({}))
    for expression in ("SrcASN", "SrcCity", ".eventName", "sigma.title", "whatever"):
        assert ex.resolve(expression, event, rule) == "8.8.8.8"


def test_geo_skipped_without_source_ip(event, rule, geo) -> None:
    del event["sourceIPAddress"]
    ex = FieldExtractor(geo)
    assert ex.resolve(".eventName", event, rule) == "ConsoleLogin"
    assert ex.resolve("SrcASN", event, rule) == "-"
    assert geo.calls == []


def test_geo_columns_without_geo_are_placeholders(extractor, event, rule) -> None:
    assert extractor.resolve("SrcASN", event, rule) == "-"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def test_resolve_record_matches_profile_length_and_order(event, rule, geo) -> None:
    profile = Profile.parse(
        "Timestamp: '.eventTime'\nSrcIP: '.sourceIPAddress'\nLevel: 'sigma.level'\n",
        geo_enabled=True,
    )
    record = FieldExtractor(geo).resolve_record(profile, event, rule)
    assert record == [
        ("Timestamp", "2024-01-02 03:04:05"),
        ("SrcIP", "203.0.113.7"),
        ("SrcASN", "AS64500 Example Net"),
        ("SrcCity", "Tokyo"),
        ("SrcCountry", "Japan"),
        ("Level", "high"),
    ]


def test_resolution_is_idempotent(event, rule, geo) -> None:
    ex = FieldExtractor(geo)
    for expression in (".eventTime", "sigma.references", "SrcCity", ".missing"):
        assert ex.resolve(expression, event, rule) == ex.resolve(expression, event, rule)


def test_geo_errors_propagate(event, rule) -> None:
    from detection_output import GeoLookupError

    class UnavailableGeo(FakeGeo):
        def convert(self, ip: str):
            raise GeoLookupError("GeoLite2-ASN.mmdb could not be read")

    with pytest.raises(GeoLookupError):
        FieldExtractor(UnavailableGeo({})).resolve(".eventName", event, rule)
