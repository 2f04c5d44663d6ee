"""Clip report model and parser for afclip output.

afclip prints a file info line, an optional per-clip detail table and one
summary line per channel, e.g.::

    afclip : "/music/track.m4a"    2 ch,  44100 Hz, 'aac ' ...
           SECONDS        SAMPLE  CHAN         VALUE       DECIBELS
            0.0234          1123     0      1.000000           0.00
            0.0456          2189     1      0.999999          -0.01

    total clipped samples for Left channel,  on-sample: 1  inter-sample: 3
    total clipped samples for Right channel, on-sample: 1  inter-sample: 2

or ``no samples clipped`` when the file is clean. Parsing is a total
function: malformed or unexpected lines are skipped, never raised.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_CHANNELS = 2
DEFAULT_SAMPLE_RATE = 48000

NO_CLIPPING_PHRASE = "no samples clipped"
SUMMARY_PHRASE = "total clipped samples"
TABLE_END_PHRASE = "total clipped"
TABLE_HEADER_MARKERS = ("SECONDS", "SAMPLE", "CHAN")

_CHANNELS_RE = re.compile(r"(\d+)\s*ch")
_RATE_RE = re.compile(r"(\d+)\s*Hz")

_CHANNEL_NAMES = {"0": "L", "1": "R"}


class ClipVerdict(str, enum.Enum):
    """What the report actually proves."""

    CLEAN = "clean"  # analyzer confirmed zero clips
    CLIPPED = "clipped"
    UNKNOWN = "unknown"  # nothing recognized; not a guarantee of clean audio


@dataclass(frozen=True)
class ClipEvent:
    seconds: float
    sample_index: int
    channel: str  # "L", "R", or the raw channel token
    amplitude: float
    decibels: float


@dataclass(frozen=True)
class ClipReport:
    filename: str
    path: str
    channels: int = DEFAULT_CHANNELS
    sample_rate: int = DEFAULT_SAMPLE_RATE
    left_on_sample: int = 0
    left_inter_sample: int = 0
    right_on_sample: int = 0
    right_inter_sample: int = 0
    has_no_clipping: bool = False
    events: Tuple[ClipEvent, ...] = ()
    # True once at least one per-channel summary line was parsed
    summary_found: bool = False

    @property
    def total_clips(self) -> int:
        return self.left_on_sample + self.left_inter_sample + self.right_on_sample + self.right_inter_sample

    @property
    def has_clipping(self) -> bool:
        return self.total_clips > 0

    @property
    def verdict(self) -> ClipVerdict:
        if self.has_no_clipping:
            return ClipVerdict.CLEAN
        if self.has_clipping or self.events:
            return ClipVerdict.CLIPPED
        if self.summary_found:
            return ClipVerdict.CLEAN
        return ClipVerdict.UNKNOWN

    @property
    def min_decibels(self) -> Optional[float]:
        return min((e.decibels for e in self.events), default=None)

    @property
    def max_decibels(self) -> Optional[float]:
        return max((e.decibels for e in self.events), default=None)

    @property
    def avg_decibels(self) -> Optional[float]:
        if not self.events:
            return None
        return sum(e.decibels for e in self.events) / len(self.events)

    @property
    def status_text(self) -> str:
        if self.has_no_clipping:
            return "No clipping detected"
        if self.has_clipping:
            return f"{self.total_clips} clips detected"
        if self.verdict is ClipVerdict.CLEAN:
            return "No clipping detected"
        return "Analysis complete"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "path": self.path,
            "channels": self.channels,
            "sample_rate": self.sample_rate,
            "verdict": self.verdict.value,
            "total_clips": self.total_clips,
            "left": {"on_sample": self.left_on_sample, "inter_sample": self.left_inter_sample},
            "right": {"on_sample": self.right_on_sample, "inter_sample": self.right_inter_sample},
            "decibels": {"min": self.min_decibels, "max": self.max_decibels, "avg": self.avg_decibels},
            "events": len(self.events),
        }


def _parse_event(line: str) -> Optional[ClipEvent]:
    parts = line.split()
    if len(parts) < 5:
        return None
    try:
        seconds = float(parts[0])
        # afclip may print the sample index with decimals ("643681.00")
        sample_index = int(float(parts[1]))
        amplitude = float(parts[3])
        decibels = float(parts[4])
    except (ValueError, OverflowError):
        return None
    channel = _CHANNEL_NAMES.get(parts[2], parts[2])
    return ClipEvent(seconds, sample_index, channel, amplitude, decibels)


def _field_after(tokens: List[str], key: str) -> Optional[int]:
    try:
        idx = tokens.index(key)
    except ValueError:
        return None
    if idx + 1 >= len(tokens):
        return None
    try:
        return int(tokens[idx + 1])
    except ValueError:
        return None


def parse_clip_report(text: str, filename: str, path: str) -> ClipReport:
    """Parse afclip output into a ClipReport. Never raises."""
    channels = DEFAULT_CHANNELS
    sample_rate = DEFAULT_SAMPLE_RATE
    counters = {"left": [0, 0], "right": [0, 0]}
    no_clipping = False
    summary_found = False
    events: List[ClipEvent] = []
    in_table = False

    for line in (text or "").splitlines():
        if NO_CLIPPING_PHRASE in line:
            no_clipping = True

        if " ch," in line and " Hz" in line:
            m = _CHANNELS_RE.search(line)
            if m:
                channels = int(m.group(1))
            m = _RATE_RE.search(line)
            if m:
                sample_rate = int(m.group(1))

        if all(marker in line for marker in TABLE_HEADER_MARKERS):
            in_table = True
            continue

        if in_table:
            stripped = line.strip()
            if not stripped or TABLE_END_PHRASE in stripped:
                in_table = False
            else:
                event = _parse_event(stripped)
                if event is not None:
                    events.append(event)

        if SUMMARY_PHRASE in line:
            if "Left" in line or "channel 0" in line:
                side = "left"
            elif "Right" in line or "channel 1" in line:
                side = "right"
            else:
                continue
            tokens = line.split()
            on_val = _field_after(tokens, "on-sample:")
            inter_val = _field_after(tokens, "inter-sample:")
            if on_val is not None:
                counters[side][0] = on_val
            if inter_val is not None:
                counters[side][1] = inter_val
            if on_val is not None or inter_val is not None:
                summary_found = True

    report = ClipReport(
        filename=filename,
        path=path,
        channels=channels,
        sample_rate=sample_rate,
        left_on_sample=max(0, counters["left"][0]),
        left_inter_sample=max(0, counters["left"][1]),
        right_on_sample=max(0, counters["right"][0]),
        right_inter_sample=max(0, counters["right"][1]),
        has_no_clipping=no_clipping,
        events=tuple(events),
        summary_found=summary_found,
    )
    # The sentinel must never contradict recorded clips
    if report.has_no_clipping and (report.total_clips or report.events):
        report = replace(report, has_no_clipping=False)
    return report


def format_decibels(value: Optional[float]) -> str:
    return "—" if value is None else f"{value:+.2f}"


def format_report(report: ClipReport, *, max_events: int = 10) -> str:
    """Render a human-readable multi-line summary for console output."""
    lines = [
        f"{report.filename}: {report.status_text}",
        f"  format: {report.channels} ch, {report.sample_rate} Hz",
    ]
    if report.verdict is ClipVerdict.UNKNOWN:
        lines.append("  verdict: unknown (no clip summary recognized in analyzer output)")
        return "\n".join(lines)
    lines.append(f"  Left:  on-sample {report.left_on_sample}, inter-sample {report.left_inter_sample}")
    lines.append(f"  Right: on-sample {report.right_on_sample}, inter-sample {report.right_inter_sample}")
    if report.events:
        lines.append(
            f"  dB over full scale: min {format_decibels(report.min_decibels)}"
            f"  max {format_decibels(report.max_decibels)}"
            f"  avg {format_decibels(report.avg_decibels)}"
        )
        for ev in report.events[:max_events]:
            lines.append(
                f"    {ev.seconds:10.4f}s  sample {ev.sample_index:>10}  {ev.channel}"
                f"  {ev.amplitude:.6f}  {format_decibels(ev.decibels)} dB"
            )
        if len(report.events) > max_events:
            lines.append(f"    ... {len(report.events) - max_events} more")
    return "\n".join(lines)
