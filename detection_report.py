#!/usr/bin/env python3
"""
Detection Hit Report
====================
Post-scan terminal report over a finished DetectionSummary, plus a CLI that
replays pre-matched hits through the output sinks.

Report sections (in print order):
    Detection Frequency Timeline   time markers around a block sparkline
    Rule Authors                   distinct rule titles per author
    Results Summary                hits / total, per-level totals, event
                                   times, busiest dates, top-5 rules table

Usage (CLI):
    detection-report --hits hits.jsonl --rules rules/            # terminal output
    detection-report --hits hits.jsonl --rules rules/ -o out     # out.csv
    detection-report --hits hits.jsonl --rules rules/ -o out -t 5 -R
                                                   # out.csv + raw out.jsonl

The hits file holds one scanned event per line:
    {"event": {...CloudTrail record...}, "rules": ["<rule id or title>", ...]}
An empty "rules" list is an event without hits.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import math
import shutil
import sys
from pathlib import Path
from typing import Iterator, Optional

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from detection_output import (
    CYAN,
    GREEN,
    NEUTRAL,
    RED,
    YELLOW,
    ConfigError,
    DetectionSummary,
    HitReportError,
    OutputMode,
    OutputSinkSet,
    Profile,
    Severity,
    SigmaRule,
    __version__,
    load_rules,
    process_event,
)

logger = logging.getLogger(__name__)

DEFAULT_TERMINAL_WIDTH = 100
SIDE_MARGIN            = 3
SPARKLINE_HEIGHT       = 5
MAX_TIME_MARKERS       = 18
MIN_TIMELINE_EVENTS    = 5
TOP_RULES              = 5
AUTHOR_NAME_MAX        = 27
AUTHOR_NAME_KEEP       = 24
TIMELINE_TITLE         = "Detection Frequency Timeline"
TIMELINE_WARNING       = ("Detection Frequency Timeline could not be displayed as "
                          "there needs to be more than 5 events.")

_BLOCKS = " ▁▂▃▄▅▆▇█"


def terminal_width() -> int:
    return shutil.get_terminal_size((DEFAULT_TERMINAL_WIDTH, 24)).columns


def table_column_count(width: int) -> int:
    """Author-table columns for a terminal width."""
    if width <= 105:
        return 2
    if width < 140:
        return 3
    if width < 175:
        return 4
    if width <= 210:
        return 5
    return 6


def percent(part: int, whole: int) -> float:
    return part * 100 / whole if whole else 0.0


def human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


# ═══════════════════════════════════════════════════════════════════════════════
# DENSITY SPARKLINE
# ═══════════════════════════════════════════════════════════════════════════════

def bucket_counts(timestamps: list[int] | tuple[int, ...], width: int) -> list[int]:
    """Histogram of timestamps over `width` equal slices of their range."""
    counts = [0] * width
    lo, hi = min(timestamps), max(timestamps)
    span   = hi - lo
    for ts in timestamps:
        idx = (ts - lo) * (width - 1) // span if span else 0
        counts[idx] += 1
    return counts


def build_sparkline(timestamps, width: int, height: int = SPARKLINE_HEIGHT) -> list[str]:
    """Block-character density chart, `height` rows tall, top row first."""
    counts = bucket_counts(timestamps, width)
    peak   = max(counts)
    levels = [math.ceil(c * height * 8 / peak) if c else 0 for c in counts]
    rows = []
    for row in range(height - 1, -1, -1):
        line = "".join(_BLOCKS[min(max(lvl - row * 8, 0), 8)] for lvl in levels)
        rows.append(line.rstrip() if row else line)
    return rows


def _marker_label(ts: float) -> str:
    dt = datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M")


def _place(canvas: list[str], pos: int, text: str) -> None:
    for i, ch in enumerate(text):
        if 0 <= pos + i < len(canvas):
            canvas[pos + i] = ch


def build_time_markers(timestamps, marker_num: int, width: int) -> tuple[list[str], list[str]]:
    """
    Evenly spaced time labels for a sparkline `width` columns wide.

    Even-numbered markers go above the chart, odd-numbered below.  Each label
    sits on its own line and a '│' runs from it to the chart edge.
    """
    if marker_num < 2 or width < 2:
        return [], []
    lo, hi = min(timestamps), max(timestamps)
    markers = [
        (i * (width - 1) // (marker_num - 1), lo + (hi - lo) * i / (marker_num - 1))
        for i in range(marker_num)
    ]
    above, below = markers[0::2], markers[1::2]

    def _lines(group: list[tuple[int, float]], label_first: bool) -> list[str]:
        lines = []
        for k, (pos, ts) in enumerate(group):
            canvas = [" "] * width
            # bars for markers whose labels lie further from the chart
            for bar_pos, _ in group[:k]:
                canvas[bar_pos] = "│"
            label = _marker_label(ts)
            start = pos if pos + len(label) <= width else max(pos - len(label) + 1, 0)
            _place(canvas, start, label)
            lines.append("".join(canvas).rstrip())
        connector = [" "] * width
        for pos, _ in group:
            connector[pos] = "│"
        joint = "".join(connector).rstrip()
        return lines + [joint] if label_first else [joint] + lines[::-1]

    return _lines(above, True), _lines(below, False)


def render_timeline(timestamps, width: int, side_margin: int = SIDE_MARGIN) -> list[str]:
    """
    Full timeline block as plain lines.  Empty for no timestamps, the warning
    line for fewer than MIN_TIMELINE_EVENTS.
    """
    if not timestamps:
        return []
    if len(timestamps) < MIN_TIMELINE_EVENTS:
        return [TIMELINE_WARNING]
    chart_width = max(width - side_margin * 2, 10)
    marker_num  = min(len(timestamps) - 2, MAX_TIME_MARKERS)
    pad         = " " * (side_margin - 1)
    header, footer = build_time_markers(timestamps, marker_num, chart_width)
    spark = build_sparkline(timestamps, chart_width, SPARKLINE_HEIGHT)
    lines = [" " * max((width - len(TIMELINE_TITLE)) // 2, 0) + TIMELINE_TITLE, ""]
    lines += [pad + s for s in header + spark + footer]
    return lines


# ═══════════════════════════════════════════════════════════════════════════════
# REPORT RENDERER
# ═══════════════════════════════════════════════════════════════════════════════

class ReportRenderer:
    """
    Read-only view over a finished DetectionSummary.

    Usage:
        ReportRenderer(summary, width=120).render()
    """

    def __init__(
        self,
        summary:  DetectionSummary,
        width:    Optional[int] = None,
        no_color: bool = False,
        console:  Optional[Console] = None,
    ):
        self.summary  = summary
        self.width    = width or terminal_width()
        self.no_color = no_color
        self.console  = console or Console(
            width=self.width, highlight=False, emoji=False, no_color=no_color,
        )
        self._level_hits = summary.level_hits
        self._date_hits  = summary.date_hits

    def _style(self, color: str) -> str:
        return NEUTRAL if self.no_color else color

    # ── Computed sections ────────────────────────────────────────────────────

    def data_reduction(self) -> tuple[int, float]:
        s = self.summary
        reduced = s.total_events - s.event_with_hits
        return reduced, percent(reduced, s.total_events)

    def level_breakdown(self, level: Severity) -> str:
        hits = self._level_hits.get(level)
        if not hits:
            return f"Total | Unique {level.value} detections: 0 (0%) | 0 (0%)"
        total  = sum(hits.values())
        unique = len(hits)
        base   = self.summary.event_with_hits
        return (
            f"Total | Unique {level.value} detections: "
            f"{total:,} ({percent(total, base):.2f}%) | "
            f"{unique:,} ({percent(unique, base):.2f}%)"
        )

    def busiest_date(self, level: Severity) -> Optional[tuple[str, int]]:
        """Date with the most hits; ties go to the earliest date."""
        dates = self._date_hits.get(level)
        if not dates:
            return None
        return min(dates.items(), key=lambda kv: (-kv[1], kv[0]))

    def top_rules(self, level: Severity) -> list[str]:
        """Top rule titles as 'title (count)', padded with 'n/a' to five rows."""
        hits = self._level_hits.get(level, {})
        ranked = sorted(hits.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_RULES]
        rows = [f"{title} ({count:,})" for title, count in ranked]
        return rows + ["n/a"] * (TOP_RULES - len(rows))

    def author_leaderboard(self) -> list[tuple[str, int]]:
        counts = self.summary.author_counts()
        return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))

    def author_columns(self) -> list[list[str]]:
        """
        Leaderboard cells laid out in columns, filled top-to-bottom then
        left-to-right.  Long names are cut to 24 characters plus '...'.
        """
        ranked = self.author_leaderboard()
        if not ranked:
            return []
        cols = table_column_count(self.width)
        rows = math.ceil(len(ranked) / cols)
        cells = []
        for name, count in ranked:
            if len(name) > AUTHOR_NAME_MAX:
                name = name[:AUTHOR_NAME_KEEP] + "..."
            cells.append(f"{name} ({count:,})")
        return [cells[i:i + rows] for i in range(0, len(cells), rows)]

    # ── Printing ─────────────────────────────────────────────────────────────

    def _table(self) -> Table:
        return Table(show_header=False, box=box.ROUNDED, show_lines=True)

    def print_timeline(self) -> None:
        lines = render_timeline(self.summary.timestamps, self.width)
        if not lines:
            return
        if lines == [TIMELINE_WARNING]:
            self.console.print(Text(TIMELINE_WARNING, style=self._style(RED)))
            self.console.print()
            return
        for line in lines:
            self.console.print(Text(line), soft_wrap=True)
        self.console.print()

    def print_authors(self) -> None:
        self.console.print(Text("Rule Authors:", style=self._style(GREEN)))
        columns = self.author_columns()
        if columns:
            tb = self._table()
            for _ in columns:
                tb.add_column()
            tb.add_row(*[Text("\n".join(col)) for col in columns])
            self.console.print(tb)
        self.console.print()

    def print_summary(self) -> None:
        s = self.summary
        green = self._style(GREEN)
        header = Text()
        header.append("Results Summary:", style=green)
        self.console.print(header)
        self.console.print()

        reduced, reduced_pct = self.data_reduction()
        line = Text()
        line.append("Events with hits", style=green)
        line.append(" / ")
        line.append("Total events: ", style=green)
        line.append(f"{s.event_with_hits:,}", style=self._style(YELLOW))
        line.append(" / ")
        line.append(f"{s.total_events:,}", style=self._style(CYAN))
        line.append(" (")
        line.append(f"Data reduction: {reduced:,} events ({reduced_pct:.2f}%)", style=green)
        line.append(")")
        self.console.print(line)
        self.console.print()

        for level in Severity:
            self.console.print(Text(self.level_breakdown(level), style=level.style(self.no_color)))
        self.console.print()

        if s.first_event_time is not None:
            self.console.print(f"First event time: {s.first_event_time:%Y-%m-%d %H:%M:%S} UTC")
        if s.last_event_time is not None:
            self.console.print(f"Last event time: {s.last_event_time:%Y-%m-%d %H:%M:%S} UTC")
        self.console.print()

        self.console.print("Dates with most total detections:")
        dates = Text()
        for i, level in enumerate(Severity):
            busiest = self.busiest_date(level)
            msg = (f"{level.value}: {busiest[0]} ({busiest[1]:,})" if busiest
                   else f"{level.value}: n/a")
            dates.append(msg, style=level.style(self.no_color))
            if i != len(Severity) - 1:
                dates.append(", ")
        self.console.print(dates)
        self.console.print()

        tb = self._table()
        tb.add_column()
        tb.add_column()
        levels = list(Severity)
        for i in range(0, len(levels), 2):
            pair  = levels[i:i + 2]
            heads = [Text(f"Top {lvl.value} alerts:", style=lvl.style(self.no_color)) for lvl in pair]
            cells = [Text("\n".join(self.top_rules(lvl)), style=lvl.style(self.no_color)) for lvl in pair]
            if len(pair) == 1:
                heads.append(Text(""))
                cells.append(Text(""))
            tb.add_row(*heads)
            tb.add_row(*cells)
        self.console.print(tb)
        self.console.print()

    def print_saved_files(self, paths: list[Path]) -> None:
        for p in paths:
            size = human_size(p.stat().st_size) if p.exists() else "0 B"
            line = Text()
            line.append("Saved file: ", style=self._style(GREEN))
            line.append(f"{p} ({size})")
            self.console.print(line, soft_wrap=True)

    def render(self, no_frequency: bool = False, no_summary: bool = False) -> None:
        self.console.print()
        if not no_frequency:
            self.print_timeline()
        self.print_authors()
        if not no_summary:
            self.print_summary()


# ═══════════════════════════════════════════════════════════════════════════════
# HIT REPLAY
# ═══════════════════════════════════════════════════════════════════════════════

def index_rules(rules: list[SigmaRule]) -> dict[str, SigmaRule]:
    """Lookup by id and by title; ids win over titles on collision."""
    index: dict[str, SigmaRule] = {}
    for rule in rules:
        index.setdefault(rule.title, rule)
    for rule in rules:
        if rule.id:
            index[rule.id] = rule
    return index


def _hit_lines(path: str | Path) -> Iterator[tuple[int, str]]:
    try:
        with open(path, encoding="utf-8") as fh:
            yield from enumerate(fh, 1)
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read hits file '{path}': {exc}") from exc


def iter_hits(path: str | Path, index: dict[str, SigmaRule]) -> Iterator[tuple[dict, list[SigmaRule]]]:
    """
    Yield (event, matched rules) per line of a hits file.

    Raises:
        ConfigError: if the file cannot be read as UTF-8 text, or on a line
            that is not a JSON object with an "event" object.
    """
    for lineno, line in _hit_lines(path):
        if not line.strip():
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Line {lineno} in '{path}' is not valid JSON: {exc}") from exc
        if not isinstance(row, dict) or not isinstance(row.get("event"), dict):
            raise ConfigError(f"Line {lineno} in '{path}' has no \"event\" object")
        matched = []
        for ref in row.get("rules") or []:
            rule = index.get(str(ref))
            if rule is None:
                logger.warning("Line %d: no loaded rule matches %r; hit skipped", lineno, ref)
                continue
            matched.append(rule)
        yield row["event"], matched


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f"Detection hit report v{__version__}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  detection-report --hits hits.jsonl --rules rules/              # Terminal output
  detection-report --hits hits.jsonl --rules rules/ -o out       # CSV
  detection-report --hits hits.jsonl --rules rules/ -o out -t 4  # CSV + JSON
  detection-report --hits hits.jsonl --rules rules/ -o out -t 3 -R
                                                    # Raw JSONL records
Output types: 1=CSV 2=JSON 3=JSONL 4=CSV+JSON 5=CSV+JSONL
""",
    )
    parser.add_argument("--hits", required=True, help="JSON-lines file of matched events")
    parser.add_argument("--rules", required=True, help="Directory of Sigma rule YAML files")
    parser.add_argument(
        "--profile", default="config/default_profile.yaml",
        help="Output profile (default: config/default_profile.yaml)",
    )
    parser.add_argument("-o", "--output", default=None, help="Output file path (extension is forced per format)")
    parser.add_argument("-t", "--output-type", type=int, default=1, help="Output type 1-5 (default: 1, CSV)")
    parser.add_argument("-R", "--raw-output", action="store_true", help="JSON output keeps the original event")
    parser.add_argument("--no-color", action="store_true", help="Disable colour output")
    parser.add_argument("--no-frequency", action="store_true", help="Skip the detection frequency timeline")
    parser.add_argument("--no-summary", action="store_true", help="Skip the results summary")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
    )
    console = Console(highlight=False, emoji=False, no_color=args.no_color)
    green   = NEUTRAL if args.no_color else GREEN

    try:
        rules = load_rules(args.rules)
        if not rules:
            print(f"✗ Could not load any rules from {args.rules}", file=sys.stderr)
            sys.exit(1)
        console.print(Text.assemble(("Total detection rules: ", green), f"{len(rules):,}"))

        profile = Profile.load(args.profile)
        summary = DetectionSummary()
        index   = index_rules(rules)
        mode    = OutputMode.from_code(args.output_type)
        with OutputSinkSet(
            profile,
            output=args.output,
            mode=mode,
            raw_output=args.raw_output,
            no_color=args.no_color,
        ) as sinks:
            for event, matched in iter_hits(args.hits, index):
                process_event(event, matched, sinks, summary)
            paths = sinks.paths
    except HitReportError as exc:
        print(f"✗ {exc}", file=sys.stderr)
        sys.exit(1)

    renderer = ReportRenderer(summary, no_color=args.no_color)
    renderer.render(no_frequency=args.no_frequency, no_summary=args.no_summary)
    renderer.print_saved_files(paths)


if __name__ == "__main__":
    main()
