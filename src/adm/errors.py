"""Exception types for the conversion pipeline.

Every per-item failure derives from `ConversionError`; the scheduler records
its message as the item's terminal error state and moves on to the next item.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class ConversionError(Exception):
    """Base class for failures local to one conversion item."""


class EncodeFailed(ConversionError):
    """The encoder exited nonzero. `diagnostic` holds its captured stderr."""

    def __init__(self, diagnostic: str, *, returncode: Optional[int] = None, stage: str = "encode") -> None:
        self.diagnostic = diagnostic
        self.returncode = returncode
        self.stage = stage
        detail = diagnostic.strip() or f"exit status {returncode}"
        super().__init__(f"Conversion failed ({stage}): {detail}")


class ProcessLaunchFailed(ConversionError):
    """An external tool could not be started (missing binary, permissions)."""

    def __init__(self, program: str, os_error: OSError) -> None:
        self.program = program
        self.os_error = os_error
        super().__init__(f"Could not launch {program}: {os_error}")


class AnalysisUnavailable(ConversionError):
    """The clip analyzer could not be launched, so no report exists."""

    def __init__(self, path: Union[str, Path], reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Clip analysis unavailable for {self.path.name}: {reason}")


class InvalidTransition(Exception):
    """A status change that would move an item backwards or out of a terminal state."""


class SchedulerBusy(Exception):
    """Raised for batch mutations that are not allowed while processing runs."""
