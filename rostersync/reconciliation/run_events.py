"""
Structured run events.

Every resolution decision is recorded as a RunEvent instead of being printed.
A host (CLI, Streamlit app, tests) decides whether to render or discard them.
Each event is mirrored to the module logger.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Event kinds
MATCH_APPLIED = "match_applied"
MATCH_MISSING = "match_missing"
OVERRIDE_FIRED = "override_fired"
CANDIDATE_MISSING = "candidate_missing"
ROW_INVALID = "row_invalid"
SUB_CODE_REPLACED = "sub_code_replaced"
DEFERRED_STORED = "deferred_stored"
DEFERRED_RECOVERED = "deferred_recovered"
RECORD_EMITTED = "record_emitted"
RECORD_WITHHELD = "record_withheld"

# Kinds worth surfacing at INFO; the rest go to DEBUG
_INFO_KINDS: frozenset[str] = frozenset({
    OVERRIDE_FIRED,
    ROW_INVALID,
    SUB_CODE_REPLACED,
    DEFERRED_STORED,
    DEFERRED_RECOVERED,
    RECORD_WITHHELD,
})


@dataclass(frozen=True)
class RunEvent:
    stage: str
    kind: str
    row_number: Optional[int] = None
    detail: dict[str, Any] = field(default_factory=dict)

    def as_text(self) -> str:
        where = f"row {self.row_number}" if self.row_number is not None else "-"
        pairs = ", ".join(f"{k}={v!r}" for k, v in self.detail.items())
        return f"[{self.stage}] {self.kind} ({where}) {pairs}".rstrip()


class EventLog:
    """Append-only event sink owned by one pipeline run."""

    def __init__(self) -> None:
        self._events: list[RunEvent] = []

    def record(
        self,
        stage: str,
        kind: str,
        row_number: Optional[int] = None,
        **detail: Any,
    ) -> RunEvent:
        event = RunEvent(stage=stage, kind=kind, row_number=row_number, detail=detail)
        self._events.append(event)
        level = logging.INFO if kind in _INFO_KINDS else logging.DEBUG
        logger.log(level, "%s", event.as_text())
        return event

    @property
    def events(self) -> tuple[RunEvent, ...]:
        return tuple(self._events)

    def of_kind(self, kind: str, stage: Optional[str] = None) -> list[RunEvent]:
        return [
            e for e in self._events
            if e.kind == kind and (stage is None or e.stage == stage)
        ]

    def count(self, kind: str, stage: Optional[str] = None) -> int:
        return len(self.of_kind(kind, stage))

    def match_kind_counts(self) -> dict[str, int]:
        """Histogram of match kinds across MATCH_APPLIED events."""
        counter: Counter = Counter(
            e.detail.get("match_kind", "none") for e in self.of_kind(MATCH_APPLIED)
        )
        return dict(sorted(counter.items()))

    def __len__(self) -> int:
        return len(self._events)
