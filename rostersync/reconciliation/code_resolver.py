"""
Code Mapping Resolver

Resolves a grouping label ("6MJPWT2 MATHS SUW") to {sub_code, subject_code}.

RULES (non-negotiable):
- Strategies are tried in fixed priority. The first one that fires wins.
- Override tables are institutional catalogue data. Reproduce, never infer.
- Table lookups are case-insensitive on the key.
- Reference-table search is scan-order-wins: exact first, then contains.
  No scoring, no "best match".
- Same grouping + same tables always produces the same ResolvedCode.

Public API:
  ReferenceTable.from_frame(df)
  resolve_grouping(grouping, reference, ...) -> ResolvedCode
  convert_sub_code(sub_code) -> str
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

import pandas as pd

from roster_tokens import cell_text, derive_candidate
from run_events import (
    CANDIDATE_MISSING,
    MATCH_APPLIED,
    MATCH_MISSING,
    OVERRIDE_FIRED,
    EventLog,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Match kinds
# ---------------------------------------------------------------------------

MATCH_OVERRIDE = "override"
MATCH_CONTAINS = "substring-contains"
MATCH_EXACT = "exact"
MATCH_SPECIAL = "special-case"
MATCH_NONE = "none"

MATCH_KINDS: frozenset[str] = frozenset({
    MATCH_OVERRIDE, MATCH_CONTAINS, MATCH_EXACT, MATCH_SPECIAL, MATCH_NONE,
})

DSE_MARKER = "DSE"

# ---------------------------------------------------------------------------
# Override tables (institutional catalogue; opaque data)
# ---------------------------------------------------------------------------

_DSE_OVERRIDES: dict[str, str] = {
    "DSE-PE1": "DPED1",
    "DSE-PE2": "DPED2",
    "DSE-PE3": "DPED3",
    "DSE-VA1": "DVIAR1",
    "DSE-VA2": "DVIAR2",
    "DSE-VA3": "DVIAR3",
}

# candidate -> (sub_code, subject_code). An empty subject_code means
# "look it up in the reference table".
_SPECIAL_EXACT: dict[str, tuple[str, str]] = {
    "CHI": ("CHN1", ""),
    "IS":  ("INSC", ""),
    "M2":  ("DMA21", "DMATH2"),
}

# Checked in this literal order: specific variants before generic CHIST3.
_HISTORICAL_SUBJECT_RULES: tuple[tuple[str, str], ...] = (
    ("CHIST1",  "DCI11"),
    ("CHIST2",  "DCI21"),
    ("CHIST3A", "DC3A1"),
    ("CHIST3B", "DC3B1"),
    ("CHIST3",  "DCI31"),
)

_GENERIC_RENAMES: dict[str, str] = {
    "MATHS": "MATH",
    "RSE":   "REGS",
    "L&S":   "LISO",
    "VA":    "VIAR",
    "PTH":   "PUTO",
}

_SUB_CODE_CONVERSIONS: dict[str, str] = {
    "DCHIS1": "DCI11",
    "DCHIS3": "DCI31",
}


def _build_lookup(table_name: str, table: Mapping[str, object]) -> dict[str, object]:
    """
    Upper-case every key of a static table.

    Raises ValueError if two keys collapse to the same upper-cased key with
    different targets.
    """
    lookup: dict[str, object] = {}
    for raw_key, target in table.items():
        key = raw_key.strip().upper()
        if key in lookup and lookup[key] != target:
            raise ValueError(
                f"Override table conflict in '{table_name}': key '{raw_key}' "
                f"maps to '{target}' but was already mapped to '{lookup[key]}'."
            )
        lookup[key] = target
    return lookup


# Module-level lookups: built once, never mutated.
DSE_LOOKUP: dict[str, str] = _build_lookup("dse", _DSE_OVERRIDES)
SPECIAL_EXACT_LOOKUP: dict[str, tuple[str, str]] = _build_lookup("special_exact", _SPECIAL_EXACT)
GENERIC_RENAME_LOOKUP: dict[str, str] = _build_lookup("generic_rename", _GENERIC_RENAMES)
CONVERSION_LOOKUP: dict[str, str] = _build_lookup("conversion", _SUB_CODE_CONVERSIONS)
HISTORICAL_SUBJECT_RULES: tuple[tuple[str, str], ...] = _HISTORICAL_SUBJECT_RULES


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedCode:
    sub_code: str
    subject_code: str
    match_kind: str

    @property
    def matched(self) -> bool:
        return self.match_kind != MATCH_NONE


UNRESOLVED = ResolvedCode(sub_code="", subject_code="", match_kind=MATCH_NONE)


class ReferenceTable:
    """
    Ordered (sub_code, subject_code) rows from the sub-code/subject table.

    Row order is significant: the generic lookup is first-scan-order-wins.
    """

    def __init__(self, rows: Iterable[tuple[str, str]]) -> None:
        self._rows: list[tuple[str, str]] = [
            (cell_text(sub).strip(), cell_text(subject).strip()) for sub, subject in rows
        ]
        self._subject_by_sub_code: dict[str, str] = {}
        for sub_code, subject_code in self._rows:
            if sub_code and subject_code:
                self._subject_by_sub_code[sub_code] = subject_code

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "ReferenceTable":
        """Expects canonical 'sub_code' and 'subject_code' columns."""
        return cls(zip(df["sub_code"].tolist(), df["subject_code"].tolist()))

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def rows(self) -> list[tuple[str, str]]:
        return list(self._rows)

    def subject_for(self, sub_code) -> str:
        """subject_code for a sub_code, "" when the table has none."""
        return self._subject_by_sub_code.get(cell_text(sub_code).strip(), "")

    def search_subject_column(self, candidate: str) -> Optional[tuple[str, str, str]]:
        """
        First row, in table order, whose subject_code equals or contains
        the candidate. An earlier containing row beats a later exact one.

        Returns (sub_code, subject_code, match_kind) or None.
        """
        if not candidate:
            return None
        for sub_code, subject_code in self._rows:
            if subject_code == candidate:
                return sub_code, subject_code, MATCH_EXACT
            if candidate in subject_code:
                return sub_code, subject_code, MATCH_CONTAINS
        return None


@dataclass(frozen=True)
class ResolutionContext:
    grouping: str
    candidate: str
    reference: ReferenceTable

    @property
    def has_dse_marker(self) -> bool:
        return DSE_MARKER in self.grouping.upper()


Strategy = Callable[[ResolutionContext], Optional[ResolvedCode]]


# ---------------------------------------------------------------------------
# Strategies (pure; context -> optional result)
# ---------------------------------------------------------------------------


def dse_override(ctx: ResolutionContext) -> Optional[ResolvedCode]:
    if not ctx.has_dse_marker:
        return None
    sub_code = DSE_LOOKUP.get(ctx.candidate.upper())
    if sub_code is None:
        return None
    return ResolvedCode(sub_code, ctx.reference.subject_for(sub_code), MATCH_OVERRIDE)


def special_exact_case(ctx: ResolutionContext) -> Optional[ResolvedCode]:
    pair = SPECIAL_EXACT_LOOKUP.get(ctx.candidate.upper())
    if pair is None:
        return None
    sub_code, subject_code = pair
    return ResolvedCode(
        sub_code,
        subject_code or ctx.reference.subject_for(sub_code),
        MATCH_SPECIAL,
    )


def historical_subject_rule(ctx: ResolutionContext) -> Optional[ResolvedCode]:
    candidate = ctx.candidate.upper()
    for marker, sub_code in HISTORICAL_SUBJECT_RULES:
        if marker in candidate:
            return ResolvedCode(sub_code, ctx.reference.subject_for(sub_code), MATCH_OVERRIDE)
    return None


def reference_lookup(ctx: ResolutionContext) -> Optional[ResolvedCode]:
    found = ctx.reference.search_subject_column(ctx.candidate)
    if found is None:
        return None
    sub_code, subject_code, match_kind = found
    return ResolvedCode(sub_code, subject_code, match_kind)


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("dse_override", dse_override),
    ("special_exact_case", special_exact_case),
    ("historical_subject_rule", historical_subject_rule),
    ("reference_lookup", reference_lookup),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def rename_candidate(candidate: str) -> str:
    """Apply the generic-rename table ("MATHS" -> "MATH")."""
    return GENERIC_RENAME_LOOKUP.get(candidate.upper(), candidate)


def convert_sub_code(sub_code) -> str:
    """DCHIS1 -> DCI11, DCHIS3 -> DCI31, identity otherwise. Idempotent."""
    text = cell_text(sub_code)
    return CONVERSION_LOOKUP.get(text.strip().upper(), text)


def resolve_candidate(
    ctx: ResolutionContext,
    strategies: tuple[tuple[str, Strategy], ...] = STRATEGIES,
) -> tuple[Optional[str], ResolvedCode]:
    """Run strategies in priority order. Returns (strategy_name, result)."""
    if not ctx.candidate:
        return None, UNRESOLVED
    for name, strategy in strategies:
        result = strategy(ctx)
        if result is not None:
            return name, result
    return None, UNRESOLVED


def resolve_grouping(
    grouping,
    reference: ReferenceTable,
    events: Optional[EventLog] = None,
    row_number: Optional[int] = None,
    stage: str = "resolve",
) -> ResolvedCode:
    """
    Resolve a grouping label through the strategy chain.

    Parameters
    ----------
    grouping : str
        Grouping label, e.g. "6MJPWT2 MATHS SUW" or "6DSE-PE1 ABC".
    reference : ReferenceTable
        Sub-code/subject table used by the generic lookup and for subject
        codes of override results.
    events : EventLog, optional
        Receives one event per decision.
    row_number : int, optional
        Source row, for diagnostics only.

    Returns
    -------
    ResolvedCode
        match_kind "none" with empty codes when nothing fires.
    """
    grouping_text = cell_text(grouping)
    derived = derive_candidate(grouping_text)
    candidate = rename_candidate(derived)
    ctx = ResolutionContext(grouping=grouping_text, candidate=candidate, reference=reference)

    if not candidate:
        if events is not None:
            events.record(stage, CANDIDATE_MISSING, row_number, grouping=grouping_text)
        return UNRESOLVED

    strategy_name, result = resolve_candidate(ctx)

    if events is not None:
        if result.matched:
            events.record(
                stage, MATCH_APPLIED, row_number,
                grouping=grouping_text, candidate=candidate,
                strategy=strategy_name, match_kind=result.match_kind,
                sub_code=result.sub_code,
            )
            if result.match_kind in (MATCH_OVERRIDE, MATCH_SPECIAL):
                events.record(
                    stage, OVERRIDE_FIRED, row_number,
                    candidate=candidate, strategy=strategy_name, sub_code=result.sub_code,
                )
        else:
            events.record(stage, MATCH_MISSING, row_number, grouping=grouping_text, candidate=candidate)

    return result
