"""Output path resolution for converted files.

Outputs go next to their source (`same-directory`) or into an `M4A`
subfolder beside it (`subfolder`). Existing files are never overwritten:
`track.m4a` is tried first, then `track-1.m4a`, `track-2.m4a`, ...
"""
from __future__ import annotations

import enum
from pathlib import Path

from loguru import logger


OUTPUT_SUFFIX = ".m4a"
OUTPUT_SUBFOLDER = "M4A"


class OutputPolicy(str, enum.Enum):
    SAME_DIRECTORY = "same-directory"
    SUBFOLDER = "subfolder"

    @classmethod
    def from_flag(cls, use_output_folder: bool) -> "OutputPolicy":
        return cls.SUBFOLDER if use_output_folder else cls.SAME_DIRECTORY


def output_dir_for(src: Path, policy: OutputPolicy) -> Path:
    """Return the directory outputs for `src` go to, creating the subfolder if needed."""
    parent = src.parent
    if policy is OutputPolicy.SUBFOLDER:
        out_dir = parent / OUTPUT_SUBFOLDER
        out_dir.mkdir(parents=True, exist_ok=True)
        return out_dir
    return parent


def _candidate(out_dir: Path, stem: str, n: int) -> Path:
    if n == 0:
        return out_dir / f"{stem}{OUTPUT_SUFFIX}"
    return out_dir / f"{stem}-{n}{OUTPUT_SUFFIX}"


def resolve_output_path(src: Path, policy: OutputPolicy = OutputPolicy.SAME_DIRECTORY) -> Path:
    """Return the first free `<stem>[-N].m4a` path for `src`.

    Checks the filesystem at call time. Two callers may get the same answer
    if neither creates the file in between; use `reserve_output_path` when
    resolving concurrently.
    """
    out_dir = output_dir_for(src, policy)
    stem = src.stem
    n = 0
    while True:
        cand = _candidate(out_dir, stem, n)
        if not cand.exists():
            return cand
        n += 1


def reserve_output_path(src: Path, policy: OutputPolicy = OutputPolicy.SAME_DIRECTORY) -> Path:
    """Resolve and claim an output path in one step.

    The chosen name is created as an empty placeholder with exclusive-create
    semantics, so concurrent workers (or processes) can never claim the same
    name. The encoder later replaces the placeholder; callers must remove it
    with `release_output_path` if encoding fails.
    """
    out_dir = output_dir_for(src, policy)
    stem = src.stem
    n = 0
    while True:
        cand = _candidate(out_dir, stem, n)
        try:
            with open(cand, "xb"):
                pass
        except FileExistsError:
            n += 1
            continue
        if n:
            logger.debug(f"{src.name}: output name taken, using {cand.name}")
        return cand


def release_output_path(path: Path) -> None:
    """Remove an unused placeholder (only if it is still empty)."""
    try:
        if path.exists() and path.stat().st_size == 0:
            path.unlink()
    except OSError as e:
        logger.debug(f"Could not release {path}: {e}")
