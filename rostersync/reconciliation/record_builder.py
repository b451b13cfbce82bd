"""
Record Builder

Assembles the canonical 9-field student-profile record and keeps the
unprocessed-row diagnostics that travel with it.

RULES:
- A record is emitted only when sub_code AND subject_code are non-empty.
  Otherwise the row is withheld and logged with a reason.
- grouping_real is always identical to grouping.
- The final sequence is sorted exactly once, case-insensitively.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import pandas as pd

from roster_tokens import cell_text
from run_events import RECORD_EMITTED, RECORD_WITHHELD, EventLog

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ACADEMIC_YEAR: str = "2025/2026"
TERM: str = "Term 1"

OUTPUT_COLUMNS: list[str] = [
    "tsss_id",
    "a_year",
    "terms",
    "sub_code",
    "subject_code",
    "taking",
    "self_taking",
    "grouping",
    "grouping_real",
]

UNPROCESSED_COLUMNS: list[str] = ["row_number", "kind", "reason", "source"]

# Row-scoped diagnostic kinds (never fatal)
INELIGIBLE_CLASS = "IneligibleClass"
NO_CANDIDATE_DERIVED = "NoCandidateDerived"
NO_REFERENCE_MATCH = "NoReferenceMatch"
STRUCTURAL_INVALID = "StructuralInvalid"
NO_CLASS_MATCH = "NoClassMatch"
MISSING_CODES = "MissingCodes"


@dataclass(frozen=True)
class OutputRecord:
    tsss_id: str
    sub_code: str
    subject_code: str
    grouping: str
    a_year: str = ACADEMIC_YEAR
    terms: str = TERM
    taking: bool = True
    self_taking: bool = False

    @property
    def grouping_real(self) -> str:
        return self.grouping

    def as_row(self) -> dict[str, object]:
        row = asdict(self)
        row["grouping_real"] = self.grouping_real
        return {col: row[col] for col in OUTPUT_COLUMNS}


@dataclass(frozen=True)
class UnprocessedRow:
    row_number: Optional[int]
    kind: str
    reason: str
    source: str = ""


def _bool_cell(value: bool) -> str:
    return "TRUE" if value else "FALSE"


def sort_case_insensitive(rows: list, key: str, fold: Callable[[str], str] = str.lower) -> list:
    """
    Stable sort of records or dicts by one column, case-insensitive.

    `fold` picks the case the keys are compared in. It only matters for
    characters between "Z" and "a", such as "_".
    """
    def _key(item) -> str:
        value = item.get(key, "") if isinstance(item, dict) else getattr(item, key, "")
        return fold(cell_text(value))
    return sorted(rows, key=_key)


class RecordBuilder:
    """Collects emitted records and withheld-row diagnostics for one stage."""

    def __init__(self, stage: str, events: Optional[EventLog] = None) -> None:
        self.stage = stage
        self._events = events
        self.records: list[OutputRecord] = []
        self.unprocessed: list[UnprocessedRow] = []

    def build(
        self,
        identifier,
        sub_code,
        subject_code,
        grouping,
        row_number: Optional[int] = None,
        source: str = "",
    ) -> Optional[OutputRecord]:
        """
        Build and keep a record, or withhold it when a code is empty.

        Returns the record, or None when withheld.
        """
        sub_text = cell_text(sub_code).strip()
        subject_text = cell_text(subject_code).strip()
        grouping_text = cell_text(grouping)
        if not sub_text or not subject_text:
            missing = [name for name, value in (("sub_code", sub_text), ("subject_code", subject_text)) if not value]
            self.withhold(
                row_number,
                MISSING_CODES,
                f"Record for grouping '{grouping_text}' withheld: empty {', '.join(missing)} "
                f"(sub_code='{sub_text}', subject_code='{subject_text}')",
                source=source,
            )
            return None
        record = OutputRecord(
            tsss_id=cell_text(identifier),
            sub_code=sub_text,
            subject_code=subject_text,
            grouping=grouping_text,
        )
        self.records.append(record)
        if self._events is not None:
            self._events.record(
                self.stage, RECORD_EMITTED, row_number,
                tsss_id=record.tsss_id, sub_code=record.sub_code, grouping=record.grouping,
            )
        return record

    def withhold(self, row_number: Optional[int], kind: str, reason: str, source: str = "") -> UnprocessedRow:
        entry = UnprocessedRow(row_number=row_number, kind=kind, reason=reason, source=source)
        self.unprocessed.append(entry)
        if self._events is not None:
            self._events.record(self.stage, RECORD_WITHHELD, row_number, diagnostic=kind, reason=reason)
        return entry


def records_to_frame(records: list[OutputRecord]) -> pd.DataFrame:
    """Serialize records in the fixed column order. Booleans become TRUE/FALSE."""
    rows = []
    for record in records:
        row = record.as_row()
        row["taking"] = _bool_cell(record.taking)
        row["self_taking"] = _bool_cell(record.self_taking)
        rows.append(row)
    return pd.DataFrame(rows, columns=OUTPUT_COLUMNS)


def unprocessed_to_frame(rows: list[UnprocessedRow]) -> pd.DataFrame:
    return pd.DataFrame([asdict(r) for r in rows], columns=UNPROCESSED_COLUMNS)
