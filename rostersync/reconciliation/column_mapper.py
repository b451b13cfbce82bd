"""
Column Mapping Engine

Deterministic header alias library for the three tabular inputs:
the sub-code/subject reference table, the class list and the user profile.

RULES (non-negotiable):
- Deterministic string matching only. No fuzzy matching.
- Case-insensitive. Whitespace stripped and collapsed before comparison.
- Same input always produces same output.
- No column renamed without being logged.
- No column silently dropped. Unmatched columns are kept under their raw
  header (per-subject class-list columns such as "CHI" rely on this).

Public API:
  resolve_columns(df, file_kind) -> dict[str, str]
  get_unmatched_columns(df, resolved_map) -> list[str]
  apply_aliases(df, file_kind) -> (DataFrame, dict[str, str])
"""

from __future__ import annotations

import logging

import pandas as pd

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Canonical field names per file kind
# ---------------------------------------------------------------------------

REFERENCE = "reference"
CLASS_LIST = "class_list"
USER_PROFILE = "user_profile"

CANONICAL_FIELDS: dict[str, frozenset[str]] = {
    REFERENCE: frozenset({"sub_code", "subject_code"}),
    CLASS_LIST: frozenset({
        "form",
        "class",
        "tsss_id",
        "class_no",
        "compound_subject",
        "x1",
        "x2",
        "x3",
    }),
    USER_PROFILE: frozenset({"user", "sub_code", "class", "grouping", "grouping_real"}),
}

REQUIRED_FIELDS: dict[str, list[str]] = {
    REFERENCE: ["sub_code", "subject_code"],
    CLASS_LIST: ["form", "class", "tsss_id"],
    USER_PROFILE: ["sub_code", "class"],
}

# ---------------------------------------------------------------------------
# Alias libraries
# ---------------------------------------------------------------------------
# Keys are written in their natural export casing; comparison is always
# case-insensitive + whitespace-normalized at lookup time.
# ---------------------------------------------------------------------------

# ── Table_Sub_Subject ───────────────────────────────────────────────────────
_REFERENCE_VARIANTS: dict[str, str] = {
    "sub_code":      "sub_code",
    "Sub Code":      "sub_code",
    "SubCode":       "sub_code",
    "Sub-Code":      "sub_code",
    "subject_code":  "subject_code",
    "Subject Code":  "subject_code",
    "SubjectCode":   "subject_code",
    "Subject-Code":  "subject_code",
}

# ── Class List ──────────────────────────────────────────────────────────────
_CLASS_LIST_VARIANTS: dict[str, str] = {
    "Form":          "form",
    "Class":         "class",
    "TSSSID":        "tsss_id",
    "TSSS ID":       "tsss_id",
    "tsss_id":       "tsss_id",
    "Student ID":    "tsss_id",
    "Class no":      "class_no",
    "Class No.":     "class_no",
    "Class_no":      "class_no",
    "Class Number":  "class_no",
    "M1&2":          "compound_subject",
    "M1&2 MU":       "compound_subject",   # export header carries a double space
    "X1":            "x1",
    "X2":            "x2",
    "X3":            "x3",
}

# ── user_profile.xlsx ───────────────────────────────────────────────────────
_USER_PROFILE_VARIANTS: dict[str, str] = {
    "user":          "user",
    "staff_code":    "user",
    "Staff Code":    "user",
    "sub_code":      "sub_code",
    "class":         "class",
    "grouping":      "grouping",
    "grouping_real": "grouping_real",
}

_ALL_LIBRARIES: list[tuple[str, dict[str, str]]] = [
    (REFERENCE,    _REFERENCE_VARIANTS),
    (CLASS_LIST,   _CLASS_LIST_VARIANTS),
    (USER_PROFILE, _USER_PROFILE_VARIANTS),
]


def normalize_header(raw) -> str:
    """Lowercase, strip, collapse inner whitespace. Used for alias lookup only."""
    return " ".join(str(raw).split()).lower()


def _build_alias_lookup(file_kind: str, variants: dict[str, str]) -> dict[str, str]:
    """
    Flatten one alias library into a normalized-variant lookup.

    Raises ValueError if the same normalized variant maps to different
    targets, or a target is not a canonical field for the file kind.
    """
    lookup: dict[str, str] = {}
    canonical = CANONICAL_FIELDS[file_kind]
    for raw_variant, target in variants.items():
        if target not in canonical:
            raise ValueError(
                f"Alias library '{file_kind}': variant '{raw_variant}' maps to "
                f"unknown field '{target}'. Valid fields: {sorted(canonical)}"
            )
        normalized_variant = normalize_header(raw_variant)
        existing = lookup.get(normalized_variant)
        if existing is not None and existing != target:
            raise ValueError(
                f"Alias library conflict detected in '{file_kind}': "
                f"variant '{raw_variant}' (normalized: '{normalized_variant}') "
                f"maps to '{target}' but was already mapped to '{existing}'. "
                f"Remove or reconcile the conflicting entry."
            )
        lookup[normalized_variant] = target
    return lookup


# Module-level alias lookups: built once, never mutated.
_ALIAS_LOOKUPS: dict[str, dict[str, str]] = {
    file_kind: _build_alias_lookup(file_kind, variants)
    for file_kind, variants in _ALL_LIBRARIES
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_columns(df: pd.DataFrame, file_kind: str) -> dict[str, str]:
    """
    Resolve raw DataFrame headers to canonical field names.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame whose columns will be inspected.
    file_kind : str
        One of REFERENCE, CLASS_LIST, USER_PROFILE.

    Returns
    -------
    dict[str, str]
        {raw_header: canonical_field} for every matched column. When two raw
        headers resolve to the same field, only the first is kept.
    """
    lookup = _ALIAS_LOOKUPS[file_kind]
    resolved: dict[str, str] = {}
    taken: set[str] = set()
    for col in df.columns:
        target = lookup.get(normalize_header(col))
        if target is None:
            continue
        if target in taken:
            logger.warning(
                "[column_mapper] %s: '%s' also resolves to '%s'; keeping first",
                file_kind, col, target,
            )
            continue
        resolved[col] = target
        taken.add(target)
        logger.info("[column_mapper] %s: '%s' → '%s'", file_kind, col, target)
    return resolved


def get_unmatched_columns(df: pd.DataFrame, resolved_map: dict[str, str]) -> list[str]:
    """Raw headers with no alias match. Surfaced, never dropped."""
    return [col for col in df.columns if col not in resolved_map]


def apply_aliases(df: pd.DataFrame, file_kind: str) -> tuple[pd.DataFrame, dict[str, str]]:
    """Rename matched headers to canonical names. Returns (frame, alias map)."""
    resolved = resolve_columns(df, file_kind)
    unmatched = get_unmatched_columns(df, resolved)
    if unmatched:
        logger.debug("[column_mapper] %s: kept unmatched columns %s", file_kind, unmatched)
    return df.rename(columns=resolved), resolved


def missing_required(df: pd.DataFrame, file_kind: str) -> list[str]:
    """Required canonical fields absent after alias resolution."""
    return [c for c in REQUIRED_FIELDS[file_kind] if c not in df.columns]
