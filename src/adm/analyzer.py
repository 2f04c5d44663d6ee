"""Run the external clip analyzer (afclip) and parse its report."""
from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger

from .clip_report import ClipReport, parse_clip_report
from .encoder import cmd_to_string
from .errors import AnalysisUnavailable


def build_analyzer_cmd(path: Path, *, analyzer: str = "afclip") -> list[str]:
    # -x: analyze only, do not write the clip-marked output file
    return [analyzer, "-x", str(path)]


def analyze_file(path: Path, *, analyzer: str = "afclip") -> ClipReport:
    """Analyze `path` for clipping.

    stdout and stderr are merged because afclip splits its report across
    both. A nonzero exit still yields a (possibly incomplete) parsed report;
    only a launch failure raises AnalysisUnavailable.
    """
    cmd = build_analyzer_cmd(path, analyzer=analyzer)
    logger.debug("Running analyzer: {}", cmd_to_string(cmd))
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise AnalysisUnavailable(path, str(e)) from e
    if proc.returncode != 0:
        logger.warning(f"{analyzer} exited {proc.returncode} for {path.name}; report may be incomplete")
    return parse_clip_report(proc.stdout or "", path.name, str(path))
