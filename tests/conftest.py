from __future__ import annotations

import pytest

from detection_output import SigmaRule


class FakeGeo:
    """In-memory GeoLookup: known IPs map to (asn, city, country)."""

    def __init__(self, known: dict[str, tuple[str, str, str]]):
        self.known = known
        self.calls: list[str] = []

    def convert(self, ip: str):
        self.calls.append(ip)
        return self.known.get(ip)

    def get_asn(self, record) -> str:
        return record[0]

    def get_city(self, record) -> str:
        return record[1]

    def get_country(self, record) -> str:
        return record[2]


@pytest.fixture()
def event() -> dict:
    return {
        "eventTime":       "2024-01-02T03:04:05Z",
        "eventName":       "ConsoleLogin",
        "eventSource":     "signin.amazonaws.com",
        "awsRegion":       "us-east-1",
        "sourceIPAddress": "203.0.113.7",
        "readOnly":        False,
        "userIdentity": {
            "type":      "IAMUser",
            "userName":  "alice",
            "accountId": "123456789012",
        },
    }


@pytest.fixture()
def rule() -> SigmaRule:
    return SigmaRule(
        title          = "Suspicious API Call",
        id             = "0b1c2d3e-0000-4000-8000-000000000001",
        status         = "Experimental",
        author         = "alice, bob",
        description    = "Detects a suspicious API call",
        references     = ["https://example.com/a", "https://example.com/b"],
        date           = "2024-01-01",
        tags           = ["attack.t1078"],
        falsepositives = ["Unknown"],
        level          = "High",
    )


@pytest.fixture()
def geo() -> FakeGeo:
    return FakeGeo({"203.0.113.7": ("AS64500 Example Net", "Tokyo", "Japan")})
