#!/usr/bin/env python3
"""
Detection Hit Output Core
=========================
Turns a stream of Sigma detection hits (raw log event + matching rule +
optional geolocation context) into simultaneously-active output encodings
and a running, single-pass summary of the whole scan.

Pieces, leaves first:
    Severity           ordered severity levels with display abbreviation/colour
    SigmaRule          rule metadata (title, id, level, author, ...)
    Profile            ordered (column, expression) pairs from a profile file
    FieldExtractor     resolves one expression against (event, rule, geo)
    OutputSinkSet      terminal / CSV / JSON / JSONL fan-out, one record per hit
    DetectionSummary   running aggregate updated per event and per hit

Usage (library):
    from detection_output import (
        Profile, FieldExtractor, OutputSinkSet, OutputMode,
        DetectionSummary, process_event,
    )

    profile = Profile.load("config/default_profile.yaml")
    summary = DetectionSummary()
    with OutputSinkSet(profile, output="hits", mode=OutputMode.CSV_AND_JSONL) as sinks:
        for event, rules in matched_stream:
            process_event(event, rules, sinks, summary)

The rule-matching engine, log source enumeration and the geolocation database
are external collaborators; this module only consumes what they produce.
"""

from __future__ import annotations

import copy
import csv
import datetime
import json
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, TextIO

import yaml
from rich.console import Console
from rich.text import Text

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

__all__ = [
    # Exceptions
    "HitReportError",
    "ConfigError",
    "GeoLookupError",
    "OutputError",
    "SummaryStateError",
    # Models
    "Severity",
    "SigmaRule",
    "Profile",
    "GeoLookup",
    # Core classes
    "FieldExtractor",
    "OutputMode",
    "JsonFormat",
    "OutputSinkSet",
    "DetectionSummary",
    # Helpers
    "abbreviate_level",
    "load_rules",
    "parse_event_time",
    "process_event",
]


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class HitReportError(Exception):
    """Base class for every error raised by the hit output core."""


class ConfigError(HitReportError):
    """
    Raised when a profile or rule-metadata file cannot be used.

    Examples:
        - Profile file missing or unreadable
        - Profile line without a ':' separator, or with an empty key
        - Sigma YAML that is not a mapping or has no title
    """


class GeoLookupError(HitReportError):
    """Raised by geo collaborators when the geolocation database is unavailable."""


class OutputError(HitReportError):
    """Raised when an output sink cannot be opened, written or flushed."""


class SummaryStateError(HitReportError):
    """Raised when DetectionSummary mutators are called out of order."""


# ═══════════════════════════════════════════════════════════════════════════════
# SEVERITY
# ═══════════════════════════════════════════════════════════════════════════════

class Severity(Enum):
    CRITICAL      = "critical"
    HIGH          = "high"
    MEDIUM        = "medium"
    LOW           = "low"
    INFORMATIONAL = "informational"

    @property
    def abbreviation(self) -> str:
        return _ABBREVIATIONS[self]

    @property
    def color(self) -> str:
        return _LEVEL_COLORS[self]

    def style(self, no_color: bool = False) -> str:
        """Rich style string for this level; neutral for every level in no-color mode."""
        return NEUTRAL if no_color else self.color

    @classmethod
    def parse(cls, value: Any) -> Optional["Severity"]:
        """
        Parse a rule level.  Accepts full names and display abbreviations,
        case-insensitively.  Returns None for anything unrecognised.
        """
        if isinstance(value, Severity):
            return value
        if value is None:
            return None
        text = str(value).strip().lower()
        for level in cls:
            if text in (level.value, level.abbreviation):
                return level
        return None


RED    = "rgb(255,0,0)"
ORANGE = "rgb(255,175,0)"
YELLOW = "rgb(255,255,0)"
GREEN  = "rgb(0,255,0)"
WHITE  = "rgb(255,255,255)"
CYAN   = "rgb(0,255,255)"
NEUTRAL = ""

_ABBREVIATIONS = {
    Severity.CRITICAL:      "crit",
    Severity.HIGH:          "high",
    Severity.MEDIUM:        "med",
    Severity.LOW:           "low",
    Severity.INFORMATIONAL: "info",
}

_LEVEL_COLORS = {
    Severity.CRITICAL:      RED,
    Severity.HIGH:          ORANGE,
    Severity.MEDIUM:        YELLOW,
    Severity.LOW:           GREEN,
    Severity.INFORMATIONAL: WHITE,
}


def abbreviate_level(level: str) -> str:
    """critical→crit, medium→med, informational→info; anything else unchanged."""
    return {
        "critical":      "crit",
        "medium":        "med",
        "informational": "info",
    }.get(level, level)


def _color_for_abbreviation(abbr: str, no_color: bool) -> str:
    if no_color:
        return NEUTRAL
    return {
        "crit": RED,
        "high": ORANGE,
        "med":  YELLOW,
        "low":  GREEN,
    }.get(abbr, WHITE)


# ═══════════════════════════════════════════════════════════════════════════════
# SIGMA RULE METADATA
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SigmaRule:
    """Metadata of one Sigma rule.  Detection logic is not modelled here."""
    title:          str
    id:             Optional[str]  = None
    status:         Optional[str]  = None
    author:         Any            = None   # str ("a, b") or list of str
    description:    Optional[str]  = None
    references:     Optional[list] = None
    date:           Optional[str]  = None
    modified:       Optional[str]  = None
    tags:           Optional[list] = None
    falsepositives: Optional[list] = None
    level:          Optional[str]  = None

    @property
    def severity(self) -> Optional[Severity]:
        return Severity.parse(self.level)

    @property
    def authors(self) -> list[str]:
        """Every credited author; comma-separated strings are split."""
        return split_authors(self.author)

    @classmethod
    def from_dict(cls, d: dict, source: str = "<dict>") -> "SigmaRule":
        """
        Build rule metadata from a parsed Sigma document.

        Raises:
            ConfigError: if the document is not a mapping or has no title.
        """
        if not isinstance(d, dict):
            raise ConfigError(f"Sigma rule in '{source}' is not a YAML mapping")
        title = d.get("title")
        if not title:
            raise ConfigError(f"Sigma rule in '{source}' has no title")

        def _text(key: str) -> Optional[str]:
            v = d.get(key)
            return None if v is None else str(v)

        def _list(key: str) -> Optional[list]:
            v = d.get(key)
            if v is None:
                return None
            return [str(x) for x in v] if isinstance(v, list) else [str(v)]

        return cls(
            title          = str(title),
            id             = _text("id"),
            status         = _text("status"),
            author         = d.get("author"),
            description    = _text("description"),
            references     = _list("references"),
            date           = _text("date"),
            modified       = _text("modified"),
            tags           = _list("tags"),
            falsepositives = _list("falsepositives"),
            level          = _text("level"),
        )

    @classmethod
    def from_yaml(cls, text: str, source: str = "<yaml>") -> "SigmaRule":
        try:
            doc = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in '{source}': {exc}") from exc
        return cls.from_dict(doc, source)


def split_authors(author: Any) -> list[str]:
    if author is None:
        return []
    raw = author if isinstance(author, list) else str(author).split(",")
    names = [str(a).strip() for a in raw]
    return [n for n in names if n]


def load_rules(directory: str | Path) -> list[SigmaRule]:
    """
    Load rule metadata from every *.yml / *.yaml file under a directory.

    Raises:
        ConfigError: if the directory does not exist or a file is malformed.
    """
    root = Path(directory)
    if not root.is_dir():
        raise ConfigError(f"Rules directory not found: {directory}")
    paths = sorted(p for p in root.rglob("*") if p.suffix in (".yml", ".yaml"))
    rules = []
    for p in paths:
        try:
            text = p.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Cannot read rule file '{p}': {exc}") from exc
        rules.append(SigmaRule.from_yaml(text, str(p)))
    logger.info("Loaded %d rule(s) from %s", len(rules), root)
    return rules


# ═══════════════════════════════════════════════════════════════════════════════
# PROFILE
# ═══════════════════════════════════════════════════════════════════════════════

GEO_COLUMNS = ("SrcASN", "SrcCity", "SrcCountry")
SOURCE_IP_COLUMN = "SrcIP"


class Profile:
    """
    Ordered (column name, extraction expression) pairs.

    Order defines the column order of every sink.  With geo enabled, the
    synthetic SrcASN / SrcCity / SrcCountry columns follow SrcIP directly;
    their expression is the column name itself and is handled by
    FieldExtractor's geo branch.
    """

    def __init__(self, entries: Iterable[tuple[str, str]] = ()):
        self.entries: list[tuple[str, str]] = list(entries)

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Profile) and self.entries == other.entries

    def __repr__(self) -> str:
        return f"Profile({self.entries!r})"

    @property
    def columns(self) -> list[str]:
        return [k for k, _ in self.entries]

    @property
    def expressions(self) -> list[str]:
        return [v for _, v in self.entries]

    @classmethod
    def parse(cls, text: str, geo_enabled: bool = False, source: str = "<profile>") -> "Profile":
        """
        Parse `Key: 'Value'` lines.  Blank lines and `#` comments are skipped.

        Raises:
            ConfigError: on a line without ':' or with an empty key, or when
                         the text yields no entries at all.
        """
        entries: list[tuple[str, str]] = []
        for lineno, line in enumerate(text.splitlines(), 1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            key, sep, value = stripped.partition(":")
            key = key.strip()
            if not sep or not key:
                raise ConfigError(
                    f"Malformed profile line {lineno} in '{source}': {stripped!r} "
                    f"(expected Key: 'Value')"
                )
            entries.append((key, value.strip().strip("'")))
            if key == SOURCE_IP_COLUMN and geo_enabled:
                entries.extend((col, col) for col in GEO_COLUMNS)
        if not entries:
            raise ConfigError(f"Profile '{source}' contains no columns")
        return cls(entries)

    @classmethod
    def load(cls, path: str | Path, geo_enabled: bool = False) -> "Profile":
        """
        Load a profile file.

        Raises:
            ConfigError: if the file is unreadable or malformed.
        """
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"Cannot read profile file '{path}': {exc}") from exc
        profile = cls.parse(text, geo_enabled=geo_enabled, source=str(path))
        logger.info("Loaded profile %s (%d columns, geo=%s)", path, len(profile), geo_enabled)
        return profile


# ═══════════════════════════════════════════════════════════════════════════════
# FIELD EXTRACTOR
# ═══════════════════════════════════════════════════════════════════════════════

class GeoLookup(Protocol):
    """
    Geolocation collaborator.  `convert` returns None for addresses the
    database does not know; the getters render one attribute of a record.

    Implementations raise GeoLookupError when the database itself cannot be
    opened or read.  FieldExtractor lets it propagate, so a broken database
    aborts the run rather than degrading every row to the bare IP.
    """

    def convert(self, ip: str) -> Optional[Any]: ...
    def get_asn(self, record: Any) -> str: ...
    def get_city(self, record: Any) -> str: ...
    def get_country(self, record: Any) -> str: ...


PLACEHOLDER = "-"
SOURCE_IP_FIELD = "sourceIPAddress"
EVENT_TIME_FIELD = "eventTime"
_MISSING = object()


class FieldExtractor:
    """
    Resolves profile expressions to display strings.

    Dispatch order:
      1. geo branch (only with a GeoLookup and an event source IP)
      2. `.field.path`     event field lookup
      3. `sigma.<name>`    rule metadata
      4. anything else     "-"
    """

    def __init__(self, geo: Optional[GeoLookup] = None):
        self.geo = geo

    # ── Event field access ───────────────────────────────────────────────────

    @staticmethod
    def lookup(event: dict, path: str) -> Any:
        """
        Resolve a field stored either as a flat key ('userIdentity.arn') or as
        nested objects ({'userIdentity': {'arn': ...}}).  Returns _MISSING when
        absent or null.
        """
        if path in event:
            v = event[path]
            return _MISSING if v is None else v
        node: Any = event
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return _MISSING if node is None else node

    @staticmethod
    def to_display(value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        return str(value)

    # ── Resolution ───────────────────────────────────────────────────────────

    def resolve(self, expression: str, event: dict, rule: SigmaRule) -> str:
        geo_value = self._geo_fallback(expression, event)
        if geo_value is not None:
            return geo_value
        if expression.startswith("."):
            return self._event_field(expression[1:], event)
        if expression.startswith("sigma."):
            return self._rule_field(expression[len("sigma."):], rule)
        return PLACEHOLDER

    def resolve_record(
        self, profile: Profile, event: dict, rule: SigmaRule
    ) -> list[tuple[str, str]]:
        """Apply every profile entry; result has one (column, value) per entry."""
        return [(col, self.resolve(expr, event, rule)) for col, expr in profile]

    def _geo_fallback(self, expression: str, event: dict) -> Optional[str]:
        """
        Geo branch.  An IP the database does not know is returned as-is for
        EVERY column, geo or not; a known IP answers only the three synthetic
        geo columns and lets everything else fall through.
        """
        if self.geo is None:
            return None
        raw_ip = self.lookup(event, SOURCE_IP_FIELD)
        if raw_ip is _MISSING:
            return None
        ip = self.to_display(raw_ip)
        record = self.geo.convert(ip)
        if record is None:
            return ip
        if expression == "SrcASN":
            return self.geo.get_asn(record)
        if expression == "SrcCity":
            return self.geo.get_city(record)
        if expression == "SrcCountry":
            return self.geo.get_country(record)
        return None

    def _event_field(self, path: str, event: dict) -> str:
        value = self.lookup(event, path)
        if value is _MISSING:
            return PLACEHOLDER
        text = self.to_display(value)
        if path == EVENT_TIME_FIELD:
            return text.replace("T", " ").replace("Z", "")
        return text

    @staticmethod
    def _rule_field(name: str, rule: SigmaRule) -> str:
        if name == "title":
            return rule.title
        if name in ("references", "tags", "falsepositives"):
            items = getattr(rule, name)
            return PLACEHOLDER if items is None else json.dumps(items, ensure_ascii=False)
        if name not in ("id", "status", "author", "description", "date", "modified", "level"):
            return PLACEHOLDER
        value = getattr(rule, name)
        if value is None:
            return PLACEHOLDER
        if name == "author" and isinstance(value, list):
            return ", ".join(str(a) for a in value)
        if name in ("status", "level"):
            return str(value).lower()
        return str(value)


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT SINKS
# ═══════════════════════════════════════════════════════════════════════════════

class JsonFormat(Enum):
    PRETTY = "json"    # pretty-printed objects, one after another (not an array)
    LINES  = "jsonl"   # one compact object per line


class OutputMode(Enum):
    """
    Output selector.  JSON and JSONL are never both active: each mode names
    at most one JsonFormat.
    """
    CSV           = 1
    JSON          = 2
    JSONL         = 3
    CSV_AND_JSON  = 4
    CSV_AND_JSONL = 5

    @classmethod
    def from_code(cls, code: Any) -> "OutputMode":
        """Map a numeric output-type code; unrecognised codes fall back to CSV."""
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            logger.debug("Unknown output type %r, using CSV", code)
            return cls.CSV

    @property
    def writes_csv(self) -> bool:
        return self in (OutputMode.CSV, OutputMode.CSV_AND_JSON, OutputMode.CSV_AND_JSONL)

    @property
    def json_format(self) -> Optional[JsonFormat]:
        if self in (OutputMode.JSON, OutputMode.CSV_AND_JSON):
            return JsonFormat.PRETTY
        if self in (OutputMode.JSONL, OutputMode.CSV_AND_JSONL):
            return JsonFormat.LINES
        return None


@dataclass
class ResolvedHit:
    """One hit after profile resolution, shared by every sink."""
    profile: Profile
    record:  list[tuple[str, str]]
    event:   dict


def _force_suffix(path: str | Path, suffix: str) -> Path:
    p = Path(path)
    return p if p.suffix == suffix else p.with_suffix(suffix)


def _open_output(path: Path, newline: Optional[str] = None) -> TextIO:
    try:
        fh = open(path, "w", encoding="utf-8", newline=newline)
    except OSError as exc:
        raise OutputError(f"Cannot open output file '{path}': {exc}") from exc
    logger.debug("Opened output file %s", path)
    return fh


class Sink:
    """Base class for one active output destination."""

    path: Optional[Path] = None

    def write(self, hit: ResolvedHit) -> None:
        raise NotImplementedError("Implement write() in subclass")

    def close(self) -> None:
        """Flush and release the destination.  Called exactly once."""


class TerminalSink(Sink):
    """
    Interactive output: every column of the record on one line, coloured by
    the record's Level, separated by an orange ' · ', then a blank line.
    """

    SEPARATOR = " · "

    def __init__(self, stream: Optional[TextIO] = None, no_color: bool = False):
        self.no_color = no_color
        self.console  = Console(
            file=stream or sys.stdout,
            highlight=False,
            emoji=False,
            force_terminal=not no_color,
            color_system=None if no_color else "truecolor",
            no_color=no_color,
            soft_wrap=True,
        )

    def render_line(self, record: list[tuple[str, str]]) -> Text:
        values = [v for _, v in record]
        level  = "info"
        for i, (col, value) in enumerate(record):
            if col == "Level":
                level = abbreviate_level(value.lower())
                values[i] = level
                break
        color     = _color_for_abbreviation(level, self.no_color)
        sep_style = NEUTRAL if self.no_color else ORANGE
        line = Text()
        for i, value in enumerate(values):
            line.append(value, style=color)
            if i != len(values) - 1:
                line.append(self.SEPARATOR, style=sep_style)
        return line

    def write(self, hit: ResolvedHit) -> None:
        try:
            self.console.print(self.render_line(hit.record))
            self.console.print()
        except OSError as exc:
            raise OutputError(f"Cannot write to terminal: {exc}") from exc

    def close(self) -> None:
        try:
            self.console.file.flush()
        except OSError as exc:
            raise OutputError(f"Cannot flush terminal output: {exc}") from exc


class CsvSink(Sink):
    """CSV file; header row of profile column names is written on open."""

    def __init__(self, path: str | Path, profile: Profile):
        self.path   = _force_suffix(path, ".csv")
        self._fh    = _open_output(self.path, newline="")
        self.writer = csv.writer(self._fh)
        self._write_row(profile.columns)

    def _write_row(self, row: list[str]) -> None:
        try:
            self.writer.writerow(row)
        except OSError as exc:
            raise OutputError(f"Cannot write CSV output '{self.path}': {exc}") from exc

    def write(self, hit: ResolvedHit) -> None:
        self._write_row([v for _, v in hit.record])

    def close(self) -> None:
        try:
            self._fh.close()
        except OSError as exc:
            raise OutputError(f"Cannot flush CSV output '{self.path}': {exc}") from exc


class JsonSink(Sink):
    """
    JSON or JSONL file.

    raw_output=False (profile mode): only the profile columns, keys sorted.
    raw_output=True  (raw mode): a copy of the original event with every
    `sigma.*` column overlaid under its column name.
    """

    def __init__(self, path: str | Path, fmt: JsonFormat, raw_output: bool = False):
        self.fmt        = fmt
        self.raw_output = raw_output
        self.path       = _force_suffix(path, "." + fmt.value)
        self._fh        = _open_output(self.path)

    def build_object(self, hit: ResolvedHit) -> Any:
        if self.raw_output:
            obj = copy.deepcopy(hit.event)
            for (col, expr), (_, value) in zip(hit.profile, hit.record):
                if expr.startswith("sigma."):
                    obj[col] = value
            return obj
        merged: dict[str, str] = {}
        for col, value in hit.record:
            merged[col] = value
        return dict(sorted(merged.items()))

    def encode(self, obj: Any) -> str:
        if self.fmt is JsonFormat.PRETTY:
            return json.dumps(obj, indent=2, ensure_ascii=False) + "\n"
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n"

    def write(self, hit: ResolvedHit) -> None:
        try:
            self._fh.write(self.encode(self.build_object(hit)))
        except OSError as exc:
            raise OutputError(f"Cannot write {self.fmt.value.upper()} output '{self.path}': {exc}") from exc

    def close(self) -> None:
        try:
            self._fh.close()
        except OSError as exc:
            raise OutputError(f"Cannot flush {self.fmt.value.upper()} output '{self.path}': {exc}") from exc


class OutputSinkSet:
    """
    The sinks active for one scan.

    No output path → terminal only.  With a path, the OutputMode decides:
    CSV and/or exactly one JSON flavour, each with its extension forced.

    Usage:
        with OutputSinkSet(profile, output="out", mode=OutputMode.CSV_AND_JSON) as sinks:
            sinks.emit(event, rule)
    """

    def __init__(
        self,
        profile:    Profile,
        output:     Optional[str | Path] = None,
        mode:       OutputMode = OutputMode.CSV,
        raw_output: bool = False,
        no_color:   bool = False,
        geo:        Optional[GeoLookup] = None,
        stream:     Optional[TextIO] = None,
    ):
        self.profile   = profile
        self.extractor = FieldExtractor(geo)
        self.sinks: list[Sink] = []
        self._closed   = False

        if output is None:
            self.sinks.append(TerminalSink(stream=stream, no_color=no_color))
            return
        try:
            if mode.writes_csv:
                self.sinks.append(CsvSink(output, profile))
            if mode.json_format is not None:
                self.sinks.append(JsonSink(output, mode.json_format, raw_output))
        except OutputError:
            self.close()
            raise

    def __enter__(self) -> "OutputSinkSet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def paths(self) -> list[Path]:
        """Files written by this set, in the order they were opened."""
        return [s.path for s in self.sinks if s.path is not None]

    def emit(self, event: dict, rule: SigmaRule) -> list[tuple[str, str]]:
        """Resolve one hit and write it to every active sink.  Returns the record."""
        record = self.extractor.resolve_record(self.profile, event, rule)
        hit    = ResolvedHit(profile=self.profile, record=record, event=event)
        for sink in self.sinks:
            sink.write(hit)
        return record

    def close(self) -> None:
        """Close every sink, then re-raise the first close failure, if any."""
        if self._closed:
            return
        self._closed = True
        first_error = None
        for sink in self.sinks:
            try:
                sink.close()
            except OutputError as exc:
                logger.error("Failed to close output sink: %s", exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


# ═══════════════════════════════════════════════════════════════════════════════
# DETECTION SUMMARY
# ═══════════════════════════════════════════════════════════════════════════════

def parse_event_time(value: Any) -> Optional[datetime.datetime]:
    """
    Parse an ISO-8601 event time ('2024-01-02T03:04:05Z').  Naive values are
    taken as UTC.  Returns None when absent or unparseable.
    """
    if isinstance(value, datetime.datetime):
        ts = value
    elif isinstance(value, str) and value:
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            ts = datetime.datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable event time %r", value)
            return None
    else:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


class DetectionSummary:
    """
    Running aggregate for one scan.  Purely additive; mutated only through
    record_event() (once per scanned event) and record_hit() (once per
    event/rule pair).  Read accessors return copies.
    """

    def __init__(self):
        self._total_events    = 0
        self._event_with_hits = 0
        self._current_has_hit = False
        self._level_hits:    dict[Severity, dict[str, int]] = {}
        self._date_hits:     dict[Severity, dict[str, int]] = {}
        self._author_titles: dict[str, set[str]] = {}
        self._timestamps:    list[int] = []
        self._first_event_time: Optional[datetime.datetime] = None
        self._last_event_time:  Optional[datetime.datetime] = None

    # ── Mutators ─────────────────────────────────────────────────────────────

    def record_event(self) -> None:
        """Start a new scanned event (hit or not)."""
        self._total_events   += 1
        self._current_has_hit = False

    def record_hit(
        self,
        event_time: Optional[datetime.datetime],
        level:      Any,
        rule_title: str,
        author:     Any = None,
    ) -> None:
        """
        Count one (event, rule) match against the event opened by the last
        record_event().  event_with_hits moves only on the event's first hit.

        Raises:
            SummaryStateError: if no event has been recorded yet.
        """
        if self._total_events == 0:
            raise SummaryStateError("record_hit() called before record_event()")
        if not self._current_has_hit:
            self._event_with_hits += 1
            self._current_has_hit = True

        severity = Severity.parse(level)
        if severity is None:
            logger.warning("Rule %r has unknown level %r; counted as informational",
                           rule_title, level)
            severity = Severity.INFORMATIONAL

        titles = self._level_hits.setdefault(severity, {})
        titles[rule_title] = titles.get(rule_title, 0) + 1

        for name in split_authors(author):
            self._author_titles.setdefault(name, set()).add(rule_title)

        if event_time is None:
            return
        event_time = parse_event_time(event_time)
        if event_time is None:
            return
        date  = event_time.strftime("%Y-%m-%d")
        dates = self._date_hits.setdefault(severity, {})
        dates[date] = dates.get(date, 0) + 1
        self._timestamps.append(int(event_time.timestamp()))
        if self._first_event_time is None or event_time < self._first_event_time:
            self._first_event_time = event_time
        if self._last_event_time is None or event_time > self._last_event_time:
            self._last_event_time = event_time

    # ── Read accessors ───────────────────────────────────────────────────────

    @property
    def total_events(self) -> int:
        return self._total_events

    @property
    def event_with_hits(self) -> int:
        return self._event_with_hits

    @property
    def level_hits(self) -> dict[Severity, dict[str, int]]:
        return {lvl: dict(titles) for lvl, titles in self._level_hits.items()}

    @property
    def date_hits(self) -> dict[Severity, dict[str, int]]:
        return {lvl: dict(dates) for lvl, dates in self._date_hits.items()}

    @property
    def author_titles(self) -> dict[str, set[str]]:
        return {a: set(t) for a, t in self._author_titles.items()}

    @property
    def timestamps(self) -> tuple[int, ...]:
        return tuple(self._timestamps)

    @property
    def first_event_time(self) -> Optional[datetime.datetime]:
        return self._first_event_time

    @property
    def last_event_time(self) -> Optional[datetime.datetime]:
        return self._last_event_time

    def author_counts(self) -> dict[str, int]:
        """Distinct rule titles credited to each author."""
        return {a: len(t) for a, t in self._author_titles.items()}


# ═══════════════════════════════════════════════════════════════════════════════
# SCAN STEP
# ═══════════════════════════════════════════════════════════════════════════════

def process_event(
    event:   dict,
    rules:   Iterable[SigmaRule],
    sinks:   OutputSinkSet,
    summary: DetectionSummary,
) -> int:
    """
    Handle one scanned event and the rules that matched it.

    Returns the number of hits emitted.  OutputError from any sink propagates.
    """
    summary.record_event()
    event_time = parse_event_time(event.get(EVENT_TIME_FIELD))
    hits = 0
    for rule in rules:
        sinks.emit(event, rule)
        summary.record_hit(event_time, rule.level, rule.title, rule.author)
        hits += 1
    return hits
