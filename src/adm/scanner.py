"""Source collection: expand submitted paths into accepted audio files (standard library only)."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Union


# wav/aif/aiff are converted; m4a is already in the target container (analyze only)
ACCEPTED_EXTENSIONS = frozenset({"wav", "aif", "aiff", "m4a"})
TARGET_EXTENSION = "m4a"


def extension_of(path: Path) -> str:
    return path.suffix[1:].lower() if path.suffix else ""


def is_accepted(path: Path) -> bool:
    return extension_of(path) in ACCEPTED_EXTENSIONS


def is_target_format(path: Path) -> bool:
    return extension_of(path) == TARGET_EXTENSION


def collect_audio_files(paths: Iterable[Union[str, Path]]) -> List[Path]:
    """Expand files and directories into a flat list of accepted audio files.

    - Directories are walked recursively; files are sorted per directory so
      the result is deterministic.
    - Plain files are included iff their extension is accepted.
    - Paths that do not exist are skipped.
    """
    results: List[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            for dirpath, dirnames, filenames in os.walk(p):
                dirnames.sort()
                for name in sorted(filenames):
                    full = Path(dirpath) / name
                    if is_accepted(full):
                        results.append(full)
        elif p.is_file() and is_accepted(p):
            results.append(p)
    return results
