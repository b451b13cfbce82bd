"""
Frequency Index + Substring Matcher

Single pass over a dataset producing {normalized value -> count, sub_codes}.
Queried afterwards by literal substring containment.

RULES:
- Keys are normalized (trimmed, whitespace-collapsed, hyphens stripped).
- Counts only grow while building; the index is read-only after build().
- Sub-codes are captured per occurrence and NOT deduplicated at capture time.
- Scan order is first-seen insertion order. No scoring.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from roster_tokens import cell_text, collapse_whitespace, normalize

logger = logging.getLogger(__name__)

SUB_CODE_COLUMN: str = "sub_code"


@dataclass
class FrequencyEntry:
    count: int = 0
    sub_codes: list[str] = field(default_factory=list)
    # first-seen text with hyphens kept
    display: str = ""


@dataclass(frozen=True)
class MatchResult:
    count: int
    matches: list[str]
    sub_codes: list[str]
    keys: list[str] = field(default_factory=list)
    displays: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.count > 0


class FrequencyIndex:
    def __init__(self) -> None:
        self._entries: dict[str, FrequencyEntry] = {}

    @classmethod
    def build(
        cls,
        rows: Iterable[Mapping[str, object]],
        sub_code_column: str = SUB_CODE_COLUMN,
    ) -> "FrequencyIndex":
        """
        Count every non-empty normalized cell value across all rows.

        Parameters
        ----------
        rows : iterable of mappings
            Column name -> raw cell value. Missing columns are skipped.
        sub_code_column : str
            Column whose trimmed value is attached to every key seen in the
            same row.

        Returns
        -------
        FrequencyIndex
        """
        index = cls()
        row_count = 0
        for row in rows:
            row_count += 1
            sub_code = cell_text(row.get(sub_code_column, "")).strip()
            for value in row.values():
                key = normalize(value)
                if not key:
                    continue
                entry = index._entries.setdefault(key, FrequencyEntry(display=collapse_whitespace(value)))
                entry.count += 1
                if sub_code:
                    entry.sub_codes.append(sub_code)
        logger.info(
            "[frequency_index] built from %d rows: %d distinct values",
            row_count, len(index._entries),
        )
        return index

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> FrequencyEntry | None:
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def find_matches(self, substring) -> MatchResult:
        """
        Aggregate every key containing the normalized substring.

        An empty result is a definitive "no match", not an error.
        """
        needle = normalize(substring)
        count = 0
        matches: list[str] = []
        keys: list[str] = []
        displays: list[str] = []
        collected: dict[str, None] = {}
        for key, entry in self._entries.items():
            if needle not in key:
                continue
            count += entry.count
            matches.append(f"{key} ({entry.count})")
            keys.append(key)
            displays.append(entry.display)
            for sub_code in entry.sub_codes:
                collected.setdefault(sub_code, None)
        return MatchResult(
            count=count,
            matches=matches,
            sub_codes=list(collected),
            keys=keys,
            displays=displays,
        )
