"""
Structural Verifier: two-level class-number / sub_code consistency.

States: unchecked -> first-level-checked -> second-level-checked (terminal).

FIRST LEVEL
  Leading integer of the class field:
  - absent             -> INVALID
  - class number <= 3  -> sub_code must NOT start with 'D'/'d'
  - class number  > 3  -> sub_code MUST start with 'D'/'d'
  An INVALID row gets the first-level override for its sub_code, if any.

SECOND LEVEL (always runs, after first level)
  The row's CURRENT sub_code (post first-level replacement) is looked up in
  the second-level table and replaced when present.

Invalid rows are counted and diagnosed. They are not removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import pandas as pd

from roster_tokens import cell_text, leading_number
from run_events import ROW_INVALID, SUB_CODE_REPLACED, EventLog

logger = logging.getLogger(__name__)

STAGE = "verify"

UNCHECKED = "unchecked"
FIRST_LEVEL_CHECKED = "first-level-checked"
SECOND_LEVEL_CHECKED = "second-level-checked"

LOWER_FORM_CEILING: int = 3

# ---------------------------------------------------------------------------
# Override tables (institutional catalogue; opaque data)
# ---------------------------------------------------------------------------

_FIRST_LEVEL_OVERRIDES: dict[str, str] = {
    "DENG1":  "ENN1",
    "DMA11":  "MATH",
    "REGS":   "DREST",
    "DPED11": "PHED",
    "DCLI21": "COLI",
    "CHN1":   "DCHIN1",
    "DPHY11": "PHY1",
    "DVIA11": "VIAR",
    "DMUSI1": "MUSI",
    "DGEO11": "GEOG",
}

_SECOND_LEVEL_OVERRIDES: dict[str, str] = {
    "DMA11":  "DMATH1",
    "DPED11": "DPHEDS",
    "DPED3":  "DPED31",
    "DPED2":  "DPED21",
    "DCHS3A": "DC3A1",
    "DCHS3B": "DC3B1",
    "DCHIS2": "DCI21",
    "DCHIN":  "DCHIN1",
    "DVIAR2": "DVIA21",
    "DVIAR3": "DVIA31",
}

FIRST_LEVEL_LOOKUP: dict[str, str] = {k.upper(): v for k, v in _FIRST_LEVEL_OVERRIDES.items()}
SECOND_LEVEL_LOOKUP: dict[str, str] = {k.upper(): v for k, v in _SECOND_LEVEL_OVERRIDES.items()}


@dataclass
class VerificationResult:
    row_number: int
    original_sub_code: str
    sub_code: str
    valid: bool = True
    reason: str = ""
    state: str = UNCHECKED

    @property
    def corrected_sub_code(self) -> str:
        return self.sub_code

    @property
    def changed(self) -> bool:
        return self.sub_code != self.original_sub_code


@dataclass
class VerificationOutcome:
    data: pd.DataFrame
    results: list[VerificationResult] = field(default_factory=list)
    first_level_invalid_count: int = 0

    @property
    def invalid_results(self) -> list[VerificationResult]:
        return [r for r in self.results if not r.valid]


def extract_class_number(class_value) -> Optional[int]:
    return leading_number(class_value)


def _starts_with_d(sub_code: str) -> bool:
    return sub_code[:1] in ("D", "d")


def first_level_check(
    class_value,
    sub_code,
    row_number: int,
    events: Optional[EventLog] = None,
) -> VerificationResult:
    """Transition unchecked -> first-level-checked."""
    current = cell_text(sub_code).strip()
    result = VerificationResult(row_number=row_number, original_sub_code=current, sub_code=current)

    class_number = extract_class_number(class_value)
    if class_number is None:
        result.valid = False
        result.reason = f"Invalid or missing class number from value '{cell_text(class_value)}'"
    elif class_number <= LOWER_FORM_CEILING and _starts_with_d(current):
        result.valid = False
        result.reason = f"class number {class_number} requires a sub_code not starting with 'D' (found '{current}')"
    elif class_number > LOWER_FORM_CEILING and not _starts_with_d(current):
        result.valid = False
        result.reason = f"class number {class_number} requires a sub_code starting with 'D' (found '{current}')"

    if not result.valid:
        if events is not None:
            events.record(STAGE, ROW_INVALID, row_number, level="first", reason=result.reason)
        replacement = FIRST_LEVEL_LOOKUP.get(current.upper())
        if replacement:
            if events is not None:
                events.record(
                    STAGE, SUB_CODE_REPLACED, row_number,
                    level="first", old=current, new=replacement,
                )
            result.sub_code = replacement

    result.state = FIRST_LEVEL_CHECKED
    return result


def second_level_check(
    result: VerificationResult,
    events: Optional[EventLog] = None,
) -> VerificationResult:
    """Transition first-level-checked -> second-level-checked."""
    if result.state != FIRST_LEVEL_CHECKED:
        raise ValueError(
            f"Row {result.row_number}: second-level check requires state "
            f"'{FIRST_LEVEL_CHECKED}', found '{result.state}'"
        )
    replacement = SECOND_LEVEL_LOOKUP.get(result.sub_code.upper())
    if replacement:
        if events is not None:
            events.record(
                STAGE, SUB_CODE_REPLACED, result.row_number,
                level="second", old=result.sub_code, new=replacement,
            )
        result.sub_code = replacement
    result.state = SECOND_LEVEL_CHECKED
    return result


def verify_rows(
    df: pd.DataFrame,
    events: Optional[EventLog] = None,
    class_column: str = "class",
    sub_code_column: str = "sub_code",
) -> VerificationOutcome:
    """
    Run both verification levels over a user-profile frame.

    First level runs over every row before second level starts. Row numbers
    are spreadsheet rows (header on row 1).

    Returns
    -------
    VerificationOutcome
        A copy of the frame with corrected sub_codes, one result per row and
        the first-level invalid count.
    """
    data = df.copy()
    results: list[VerificationResult] = []
    invalid_count = 0

    for position, (class_value, sub_code) in enumerate(
        zip(data[class_column].tolist(), data[sub_code_column].tolist())
    ):
        result = first_level_check(class_value, sub_code, position + 2, events)
        if not result.valid:
            invalid_count += 1
        results.append(result)

    logger.info("[structural_verifier] first-level invalid rows: %d", invalid_count)

    for result in results:
        second_level_check(result, events)

    data[sub_code_column] = [r.sub_code for r in results]
    return VerificationOutcome(data=data, results=results, first_level_invalid_count=invalid_count)
