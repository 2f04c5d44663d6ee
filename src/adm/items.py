"""Per-file conversion items and their status machine.

    pending -> [converting(0.0 -> 0.25 -> 0.75) ->] analyzing -> completed
                                                             \\-> error

Any non-terminal state may fail to `error`. `completed` and `error` are
absorbing. Converting is only reachable for sources that need encoding.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .clip_report import ClipReport
from .errors import InvalidTransition
from .scanner import is_target_format


class StatusKind(str, enum.Enum):
    PENDING = "pending"
    CONVERTING = "converting"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"


_RANK = {
    StatusKind.PENDING: 0,
    StatusKind.CONVERTING: 1,
    StatusKind.ANALYZING: 2,
    StatusKind.COMPLETED: 3,
    StatusKind.ERROR: 3,
}


@dataclass(frozen=True)
class ConversionStatus:
    kind: StatusKind
    progress: float = 0.0
    report: Optional[ClipReport] = None
    message: Optional[str] = None

    @classmethod
    def pending(cls) -> "ConversionStatus":
        return cls(StatusKind.PENDING)

    @classmethod
    def converting(cls, progress: float = 0.0) -> "ConversionStatus":
        if not 0.0 <= progress <= 1.0:
            raise ValueError(f"progress out of range: {progress}")
        return cls(StatusKind.CONVERTING, progress=progress)

    @classmethod
    def analyzing(cls) -> "ConversionStatus":
        return cls(StatusKind.ANALYZING)

    @classmethod
    def completed(cls, report: Optional[ClipReport]) -> "ConversionStatus":
        return cls(StatusKind.COMPLETED, progress=1.0, report=report)

    @classmethod
    def error(cls, message: str) -> "ConversionStatus":
        return cls(StatusKind.ERROR, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (StatusKind.COMPLETED, StatusKind.ERROR)

    @property
    def is_processing(self) -> bool:
        return self.kind in (StatusKind.CONVERTING, StatusKind.ANALYZING)

    def describe(self) -> str:
        if self.kind is StatusKind.CONVERTING:
            return f"converting ({int(self.progress * 100)}%)"
        if self.kind is StatusKind.COMPLETED:
            return self.report.status_text if self.report else "completed"
        if self.kind is StatusKind.ERROR:
            return f"error: {self.message}"
        return self.kind.value


def check_transition(current: ConversionStatus, new: ConversionStatus, *, already_encoded: bool) -> None:
    """Raise InvalidTransition unless current -> new is allowed."""
    if current.is_terminal:
        raise InvalidTransition(f"{current.kind.value} is terminal; cannot move to {new.kind.value}")
    if new.kind is StatusKind.ERROR:
        return
    if new.kind is StatusKind.CONVERTING and already_encoded:
        raise InvalidTransition("already-encoded items are never converted")
    if new.kind is StatusKind.COMPLETED and current.kind is not StatusKind.ANALYZING:
        raise InvalidTransition(f"cannot complete from {current.kind.value}")
    if new.kind is StatusKind.PENDING:
        raise InvalidTransition(f"cannot return to pending from {current.kind.value}")
    if current.kind is StatusKind.CONVERTING and new.kind is StatusKind.CONVERTING:
        if new.progress < current.progress:
            raise InvalidTransition(f"progress regressed {current.progress} -> {new.progress}")
        return
    if _RANK[new.kind] <= _RANK[current.kind]:
        raise InvalidTransition(f"{current.kind.value} -> {new.kind.value} is not forward")


@dataclass(frozen=True)
class ItemSnapshot:
    """Read-only view of an item handed to observers."""

    id: str
    source: Path
    name: str
    already_encoded: bool
    status: ConversionStatus
    output_path: Optional[Path]


class ConversionItem:
    """One source file moving through the pipeline.

    Only the scheduler calls `transition`; everyone else reads `snapshot()`.
    """

    def __init__(self, source: Path) -> None:
        self.id = uuid.uuid4().hex
        self.source = Path(source)
        self.name = self.source.name
        self.already_encoded = is_target_format(self.source)
        self.output_path: Optional[Path] = None
        self._status = ConversionStatus.pending()

    @property
    def status(self) -> ConversionStatus:
        return self._status

    @property
    def report(self) -> Optional[ClipReport]:
        return self._status.report

    @property
    def is_processing(self) -> bool:
        return self._status.is_processing

    @property
    def is_complete(self) -> bool:
        return self._status.is_terminal

    def transition(self, new: ConversionStatus) -> None:
        check_transition(self._status, new, already_encoded=self.already_encoded)
        self._status = new

    def snapshot(self) -> ItemSnapshot:
        return ItemSnapshot(
            id=self.id,
            source=self.source,
            name=self.name,
            already_encoded=self.already_encoded,
            status=self._status,
            output_path=self.output_path,
        )

    def __repr__(self) -> str:
        return f"ConversionItem({self.name!r}, {self._status.describe()})"
