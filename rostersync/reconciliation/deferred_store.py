"""
Deferred Reconciliation Store

Multi-map from group prefix ("3A", "4MJPW4", "4") to the ordered list of
GroupingRecords that found no class-list match. Later passes recover them
with a more specific search (form + class letter + subject + teacher).

RULES:
- Buckets are lists. Entries sharing a prefix are never merged, replaced or
  deduplicated.
- Insertion order is preserved within and across buckets.
- Entries are never deleted. Searches are read-only.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, Optional

from roster_tokens import cell_text, tokenize
from run_events import DEFERRED_RECOVERED, DEFERRED_STORED, EventLog

logger = logging.getLogger(__name__)

STAGE = "deferred"

COMPOUND_SUBJECT_MARKER = "(M2)"

_DIGIT_RE = re.compile(r"\d")


@dataclass(frozen=True)
class GroupingRecord:
    group: str
    subject: str
    teacher: str
    sub_code: str

    @property
    def grouping(self) -> str:
        """Display label, e.g. "3A CHI NEW"."""
        return f"{self.group} {self.subject} {self.teacher}"

    @classmethod
    def from_class_field(cls, class_field, sub_code) -> "GroupingRecord":
        tokens = tokenize(class_field)
        return cls(
            group=tokens[0] if len(tokens) > 0 else "",
            subject=tokens[1] if len(tokens) > 1 else "",
            teacher=tokens[2] if len(tokens) > 2 else "",
            sub_code=cell_text(sub_code),
        )


class DeferredStore:
    def __init__(self, events: Optional[EventLog] = None) -> None:
        self._buckets: dict[str, list[GroupingRecord]] = {}
        self._events = events

    def add(self, record: GroupingRecord, row_number: Optional[int] = None) -> None:
        self._buckets.setdefault(record.group, []).append(record)
        if self._events is not None:
            self._events.record(
                STAGE, DEFERRED_STORED, row_number,
                group=record.group, subject=record.subject,
                teacher=record.teacher, sub_code=record.sub_code,
            )

    def add_class_field(self, class_field, sub_code, row_number: Optional[int] = None) -> GroupingRecord:
        record = GroupingRecord.from_class_field(class_field, sub_code)
        self.add(record, row_number)
        return record

    def bucket(self, group: str) -> list[GroupingRecord]:
        return list(self._buckets.get(group, []))

    def groups(self) -> list[str]:
        return list(self._buckets)

    def entries(self) -> Iterator[GroupingRecord]:
        for records in self._buckets.values():
            yield from records

    def __len__(self) -> int:
        return sum(len(records) for records in self._buckets.values())

    def search(self, form, class_letter, subject: str, teacher) -> Optional[GroupingRecord]:
        """
        First entry matching the class-list criteria, in full scan order.

        A bucket qualifies when its key's first character equals str(form)
        and the key contains class_letter. Inside it, subject and teacher
        must be exactly equal.
        """
        form_text = cell_text(form)
        letter = cell_text(class_letter)
        teacher_text = cell_text(teacher)
        for group, records in self._buckets.items():
            if group[:1] != form_text or letter not in group:
                continue
            for record in records:
                if record.subject == subject and record.teacher == teacher_text:
                    return record
        return None

    def recover(
        self,
        form,
        class_letter,
        subject: str,
        teacher,
        row_number: Optional[int] = None,
    ) -> Optional[GroupingRecord]:
        """search() plus a DEFERRED_RECOVERED event on success."""
        record = self.search(form, class_letter, subject, teacher)
        if record is not None and self._events is not None:
            self._events.record(
                STAGE, DEFERRED_RECOVERED, row_number,
                subject=subject, group=record.group, teacher=record.teacher,
            )
        return record

    def single_digit_candidates(self, marker: str = COMPOUND_SUBJECT_MARKER) -> list[GroupingRecord]:
        """Entries whose group holds exactly one digit and whose subject is the marker."""
        return [
            record for record in self.entries()
            if len(_DIGIT_RE.findall(record.group)) == 1 and record.subject == marker
        ]


def first_candidate_for_form(candidates: list[GroupingRecord], form_number: int) -> Optional[GroupingRecord]:
    prefix = str(form_number)
    for record in candidates:
        if record.group.startswith(prefix):
            return record
    return None
