"""Sample-rate probe backed by the external info tool (afinfo).

The probe is advisory: any failure yields DEFAULT_SAMPLE_RATE, which at worst
causes an unneeded (harmless) resample decision to be skipped or taken.
"""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger


DEFAULT_SAMPLE_RATE = 48000
# Sources above this rate get resampled to it during pass 1
RESAMPLE_CEILING_HZ = 48000


def parse_sample_rate(text: str) -> Optional[int]:
    """Return the integer value of the first parseable `sample rate:` line."""
    for line in (text or "").splitlines():
        if "sample rate:" not in line:
            continue
        parts = line.split(":")
        if len(parts) < 2:
            continue
        try:
            return int(float(parts[1].strip()))
        except (ValueError, OverflowError):
            continue
    return None


def probe_sample_rate(path: Path, *, info_bin: str = "afinfo") -> int:
    """Query `info_bin <path>` for the sample rate. Never raises."""
    try:
        proc = subprocess.run(
            [info_bin, str(path)],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
    except OSError as e:
        logger.debug(f"{info_bin} could not be launched ({e}); assuming {DEFAULT_SAMPLE_RATE} Hz")
        return DEFAULT_SAMPLE_RATE
    if proc.returncode != 0:
        logger.debug(f"{info_bin} exited {proc.returncode} for {path.name}; assuming {DEFAULT_SAMPLE_RATE} Hz")
        return DEFAULT_SAMPLE_RATE
    rate = parse_sample_rate(proc.stdout or "")
    if rate is None:
        logger.debug(f"No sample rate in {info_bin} output for {path.name}; assuming {DEFAULT_SAMPLE_RATE} Hz")
        return DEFAULT_SAMPLE_RATE
    return rate


def needs_resample(sample_rate: int) -> bool:
    return sample_rate > RESAMPLE_CEILING_HZ
