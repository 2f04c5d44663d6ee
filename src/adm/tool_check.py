"""Preflight checks for the external audio tools.

Uses only the Python standard library.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from typing import List, Optional

from .config import AdmSettings


@dataclass(frozen=True)
class Toolchain:
    """Executables used by the pipeline, as configured (names or paths)."""

    encoder: str = "afconvert"
    info: str = "afinfo"
    analyzer: str = "afclip"

    @classmethod
    def from_settings(cls, cfg: AdmSettings) -> "Toolchain":
        return cls(encoder=cfg.encoder_bin, info=cfg.info_bin, analyzer=cfg.analyzer_bin)


@dataclass
class ToolStatus:
    name: str
    role: str
    available: bool
    path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ToolchainStatus:
    encoder: ToolStatus
    info: ToolStatus
    analyzer: ToolStatus

    @property
    def tools(self) -> List[ToolStatus]:
        return [self.encoder, self.info, self.analyzer]

    @property
    def can_convert(self) -> bool:
        # The probe is advisory; a missing afinfo only disables resample detection
        return self.encoder.available and self.analyzer.available

    @property
    def can_analyze(self) -> bool:
        return self.analyzer.available


def probe_tool(name: str, role: str) -> ToolStatus:
    path = shutil.which(name)
    if not path:
        return ToolStatus(name=name, role=role, available=False, error=f"{name} not found in PATH")
    return ToolStatus(name=name, role=role, available=True, path=path)


def probe_toolchain(tools: Toolchain) -> ToolchainStatus:
    return ToolchainStatus(
        encoder=probe_tool(tools.encoder, "encoder"),
        info=probe_tool(tools.info, "info probe"),
        analyzer=probe_tool(tools.analyzer, "clip analyzer"),
    )


if __name__ == "__main__":
    for st in probe_toolchain(Toolchain()).tools:
        print(st)
