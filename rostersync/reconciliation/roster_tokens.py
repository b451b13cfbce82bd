"""
Roster Token Rules

Canonicalizes raw roster/workload cell text.

RULES:
- Empty cells are "" (never None).
- Hyphens are stripped for matching only. Display text keeps them.
- Token splitting is whitespace-based; order is preserved.
"""

from __future__ import annotations

import re
from typing import Optional

_WHITESPACE_RE = re.compile(r"\s+")
_LEADING_DIGITS_RE = re.compile(r"^(\d+)")
_UPPER_ONLY_RE = re.compile(r"^[A-Z]+$")
_PARENTHESIZED_RE = re.compile(r"^\((.*)\)$")

ELIGIBLE_FORM_MIN: int = 1
ELIGIBLE_FORM_MAX: int = 6

# Substrings that mark a workload cell as non-class text
REJECTED_CONCATENATION_MARKERS: tuple[str, ...] = ("---", "ACE", "READING")


def cell_text(raw) -> str:
    """Stringify a raw cell. None becomes ""."""
    if raw is None:
        return ""
    return str(raw)


def collapse_whitespace(raw) -> str:
    return _WHITESPACE_RE.sub(" ", cell_text(raw)).strip()


def normalize(raw) -> str:
    """
    Trim, collapse whitespace runs, strip hyphens.

    The result is a matching key only and must never be displayed in place
    of the original text.
    """
    text = collapse_whitespace(raw)
    if "-" in text:
        text = collapse_whitespace(text.replace("-", ""))
    return text


def tokenize(raw) -> list[str]:
    return cell_text(raw).split()


def leading_number(raw) -> Optional[int]:
    match = _LEADING_DIGITS_RE.match(cell_text(raw).strip())
    return int(match.group(1)) if match else None


def is_eligible(class_field) -> bool:
    """
    A class field is eligible when it has exactly 3 tokens and the first
    token's leading digit run is a form number between 1 and 6.
    """
    if not isinstance(class_field, str):
        return False
    tokens = tokenize(class_field)
    if len(tokens) != 3:
        return False
    form = leading_number(tokens[0])
    if form is None:
        return False
    return ELIGIBLE_FORM_MIN <= form <= ELIGIBLE_FORM_MAX


def extract_leading_group(raw) -> str:
    """First token verbatim, e.g. "1J" from "1J CES JAT"."""
    tokens = tokenize(raw)
    return tokens[0] if tokens else ""


def derive_candidate(grouping) -> str:
    """
    Derive the subject-code candidate from a grouping label.

    3 tokens -> second token ("6MJPWT3 MATHS SUW" -> "MATHS").
    2 tokens -> first token without its leading digits ("6DSE-PE1 ABC" -> "DSE-PE1").
    Anything else -> "".
    Surrounding parentheses are removed ("(M2)" -> "M2").
    """
    tokens = tokenize(grouping)
    if len(tokens) == 3:
        candidate = tokens[1]
    elif len(tokens) == 2:
        candidate = _LEADING_DIGITS_RE.sub("", tokens[0]).strip()
    else:
        return ""
    return _PARENTHESIZED_RE.sub(r"\1", candidate)


def is_valid_sheet_name(sheet_name: str) -> bool:
    """Department sheets are named with upper-case letters only."""
    if "_" in sheet_name:
        return False
    return bool(_UPPER_ONLY_RE.match(sheet_name))


def is_valid_concatenation(text) -> bool:
    trimmed = cell_text(text).strip()
    if not trimmed:
        return False
    if not re.search(r"[A-Z]", trimmed):
        return False
    if not re.search(r"\d", trimmed):
        return False
    return not any(marker in trimmed for marker in REJECTED_CONCATENATION_MARKERS)


def extract_staff_code(text) -> str:
    """
    Staff code is the last token of a class label: the text after the first
    space, then after the next space ("6MJPWT2 MATHS SUW" -> "SUW").
    """
    staff_code = ""
    trimmed = cell_text(text)
    first_space = trimmed.find(" ")
    if first_space != -1:
        staff_code = trimmed[first_space + 1:].strip()
    inner_space = staff_code.find(" ")
    if inner_space != -1:
        staff_code = staff_code[inner_space + 1:].strip()
    return staff_code
