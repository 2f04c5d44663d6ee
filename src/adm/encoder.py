"""Encoder command construction and execution (afconvert).

- SoundCheck (default): two passes.
  Pass 1 writes an intermediate CAF and generates SoundCheck (loudness)
  metadata, resampling to 48 kHz first when the source rate is higher.
  Pass 2 encodes that CAF to 256 kbps AAC in an M4A container and embeds the
  metadata generated by pass 1.
- Direct: a single AAC pass without SoundCheck, for when speed matters more.

The final output is written to a temporary sibling in the destination
directory and renamed into place on success, so truncated files are never
left at the destination path.
"""
from __future__ import annotations

import os
import shlex
import subprocess
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger

from .errors import EncodeFailed, ProcessLaunchFailed
from .logging import truncate
from .probe import RESAMPLE_CEILING_HZ, needs_resample


AAC_BITRATE = 256000
AAC_QUALITY = 127
AAC_STRATEGY = 2  # VBR constrained
SRC_COMPLEXITY = "bats"
SRC_QUALITY = 127

# Discrete progress checkpoints; afconvert emits no incremental progress
PROGRESS_PASS1 = 0.25
PROGRESS_PASS2 = 0.75

ProgressFn = Callable[[float], None]


def _resample_flags() -> List[str]:
    return ["--src-complexity", SRC_COMPLEXITY, "-r", str(SRC_QUALITY)]


def _aac_flags() -> List[str]:
    return [
        "-d", "aac",
        "-f", "m4af",
        "-u", "pgcm", "2",  # stereo channel layout
    ]


def _aac_quality_flags() -> List[str]:
    return [
        "-b", str(AAC_BITRATE),
        "-q", str(AAC_QUALITY),
        "-s", str(AAC_STRATEGY),
    ]


def build_pass1_cmd(src: Path, caf_out: Path, *, resample: bool, encoder: str = "afconvert") -> List[str]:
    """Build pass 1: source -> CAF with SoundCheck generation.

    With `resample`, convert to little-endian float32 at 48 kHz using the
    high-quality sample-rate converter; otherwise keep the source format.
    """
    cmd = [encoder, str(src)]
    if resample:
        cmd += ["-d", f"LEF32@{RESAMPLE_CEILING_HZ}", "-f", "caff", "--soundcheck-generate"] + _resample_flags()
    else:
        cmd += ["-d", "0", "-f", "caff", "--soundcheck-generate"]
    cmd.append(str(caf_out))
    return cmd


def build_pass2_cmd(caf_in: Path, out: Path, *, encoder: str = "afconvert") -> List[str]:
    """Build pass 2: CAF -> AAC/M4A reading the SoundCheck data from pass 1."""
    return (
        [encoder, str(caf_in)]
        + _aac_flags()
        + ["--soundcheck-read"]
        + _aac_quality_flags()
        + [str(out)]
    )


def build_direct_cmd(src: Path, out: Path, *, resample: bool, encoder: str = "afconvert") -> List[str]:
    """Build the single-pass AAC command used when SoundCheck is disabled."""
    cmd = [encoder, str(src)] + _aac_flags() + _aac_quality_flags()
    if resample:
        cmd += ["-r", str(SRC_QUALITY), "--src-complexity", SRC_COMPLEXITY]
    cmd.append(str(out))
    return cmd


def cmd_to_string(cmd: List[str]) -> str:
    return " ".join(shlex.quote(p) for p in cmd)


def run_encoder(cmd: List[str]) -> tuple[int, str]:
    """Run the encoder to completion and return the exit code and stderr.

    Raises ProcessLaunchFailed when the executable cannot be started.
    """
    logger.debug("Running encoder: {}", cmd_to_string(cmd))
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise ProcessLaunchFailed(cmd[0], e) from e
    return proc.returncode, proc.stderr or ""


def _check(cmd: List[str], stage: str) -> None:
    rc, err = run_encoder(cmd)
    if rc != 0:
        logger.bind(action="encode", stage=stage, rc=rc).error(f"{stage} failed: {truncate(err, max_lines=5)}")
        raise EncodeFailed(err, returncode=rc, stage=stage)


def _temp_out_path(final_path: Path) -> Path:
    """Return a unique temp file path in the same directory as final_path."""
    suffix = f".part-{os.getpid()}-{uuid.uuid4().hex[:8]}"
    return final_path.with_name(final_path.name + suffix)


def intermediate_path(temp_dir: Path) -> Path:
    """Return a fresh CAF path under temp_dir; unique across concurrent workers."""
    temp_dir.mkdir(parents=True, exist_ok=True)
    return temp_dir / f"{uuid.uuid4().hex}.caf"


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")


def _finalize(out_tmp: Path, dest: Path) -> None:
    try:
        os.replace(str(out_tmp), str(dest))
    except OSError as e:
        _unlink_quietly(out_tmp)
        raise EncodeFailed(f"Rename failed: {e}", stage="finalize") from e


def encode_two_pass(
    src: Path,
    dest: Path,
    *,
    sample_rate: int,
    temp_dir: Path,
    encoder: str = "afconvert",
    on_progress: Optional[ProgressFn] = None,
) -> None:
    """Encode src to dest with SoundCheck, writing atomically to dest.

    The intermediate CAF is removed whether or not pass 2 succeeds.
    Raises EncodeFailed / ProcessLaunchFailed on the first failing pass.
    """
    resample = needs_resample(sample_rate)
    caf = intermediate_path(temp_dir)
    out_tmp = _temp_out_path(dest)
    try:
        if on_progress:
            on_progress(PROGRESS_PASS1)
        _check(build_pass1_cmd(src, caf, resample=resample, encoder=encoder), "pass 1")
        if on_progress:
            on_progress(PROGRESS_PASS2)
        _check(build_pass2_cmd(caf, out_tmp, encoder=encoder), "pass 2")
    except Exception:
        _unlink_quietly(out_tmp)
        raise
    finally:
        _unlink_quietly(caf)
    _finalize(out_tmp, dest)


def encode_direct(
    src: Path,
    dest: Path,
    *,
    sample_rate: int,
    encoder: str = "afconvert",
    on_progress: Optional[ProgressFn] = None,
) -> None:
    """Single-pass AAC encode without SoundCheck, writing atomically to dest."""
    out_tmp = _temp_out_path(dest)
    if on_progress:
        on_progress(PROGRESS_PASS1)
    try:
        _check(build_direct_cmd(src, out_tmp, resample=needs_resample(sample_rate), encoder=encoder), "direct")
    except Exception:
        _unlink_quietly(out_tmp)
        raise
    _finalize(out_tmp, dest)


def encode_file(
    src: Path,
    dest: Path,
    *,
    soundcheck: bool = True,
    sample_rate: int,
    temp_dir: Path,
    encoder: str = "afconvert",
    on_progress: Optional[ProgressFn] = None,
) -> None:
    """Encode one source file to dest using the selected strategy."""
    if sample_rate > RESAMPLE_CEILING_HZ:
        logger.debug(f"{src.name}: {sample_rate} Hz -> resampling to {RESAMPLE_CEILING_HZ} Hz")
    if soundcheck:
        encode_two_pass(
            src, dest, sample_rate=sample_rate, temp_dir=temp_dir, encoder=encoder, on_progress=on_progress
        )
    else:
        encode_direct(src, dest, sample_rate=sample_rate, encoder=encoder, on_progress=on_progress)
