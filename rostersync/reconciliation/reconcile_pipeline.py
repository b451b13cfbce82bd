"""
Rostersync Reconciliation Pipeline

Turns the teacher workload workbook, the sub-code/subject reference table and
the class list into a student profile.

STAGES (strict order; each consumes the complete output of the previous one)
------
1. workload: workload sheets -> user profile, grouping resolved to sub_code
2. verify  : two-level structural verification of the user profile
3. student : class-list match per profile row; unmatched rows deferred and
             recovered by subject-keyed search
4. append  : elective slots (X1..X3) matched through the frequency index

CONTRACT ANCHORS
----------------
- Row-scoped problems never stop a run. They become UnprocessedRow entries.
- Only collaborator failures (unreadable input, unwritable output, missing
  columns or settings) halt, with ReconciliationError.
- Nothing is written unless every stage completed.
- The student profile is sorted once, by grouping, case-insensitively.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import pandas as pd

from code_resolver import (
    MATCH_CONTAINS,
    SPECIAL_EXACT_LOOKUP,
    ReferenceTable,
    convert_sub_code,
    rename_candidate,
    resolve_grouping,
)
from column_mapper import (
    CLASS_LIST,
    REFERENCE,
    apply_aliases,
    missing_required,
)
from deferred_store import DeferredStore, first_candidate_for_form
from frequency_index import FrequencyIndex
from record_builder import (
    INELIGIBLE_CLASS,
    MISSING_CODES,
    NO_CANDIDATE_DERIVED,
    NO_CLASS_MATCH,
    NO_REFERENCE_MATCH,
    STRUCTURAL_INVALID,
    OutputRecord,
    RecordBuilder,
    UnprocessedRow,
    records_to_frame,
    sort_case_insensitive,
    unprocessed_to_frame,
)
from roster_tokens import (
    cell_text,
    collapse_whitespace,
    derive_candidate,
    extract_leading_group,
    extract_staff_code,
    is_eligible,
    is_valid_concatenation,
    is_valid_sheet_name,
    leading_number,
    tokenize,
)
from run_events import (
    CANDIDATE_MISSING,
    DEFERRED_RECOVERED,
    DEFERRED_STORED,
    MATCH_APPLIED,
    MATCH_MISSING,
    SUB_CODE_REPLACED,
    EventLog,
)
from settings import Settings, load_settings
from structural_verifier import verify_rows
from workbook_io import (
    ReconciliationError,
    file_hash,
    read_all_sheets_raw,
    read_first_sheet,
    write_workbooks,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STAGE_WORKLOAD = "workload"
STAGE_STUDENT = "student"
STAGE_APPEND = "append"

# Workload sheets: header on Excel row 3, data from row 4.
WORKLOAD_HEADER_ROW: int = 2
# Columns D and E hold the class label; column G flags compound-subject rows.
WORKLOAD_LABEL_COLUMNS: tuple[int, int] = (3, 4)
WORKLOAD_FLAG_COLUMN: int = 6
COMPOUND_SHEET = "MATHS"
COMPOUND_FLAG = "C+M2"

USER_PROFILE_COLUMNS: list[str] = ["user", "sub_code", "class", "grouping", "grouping_real"]

# Class-list subject columns recovered from the deferred store, in order.
RECOVERY_SUBJECTS: tuple[str, ...] = ("CHI", "MATHS", "RSE", "ENG")

COMPOUND_FORM_FLOOR: int = 3
COMPOUND_COLUMN_MARKER = "M2"
COMPOUND_SUB_CODE, COMPOUND_SUBJECT_CODE = SPECIAL_EXACT_LOOKUP["M2"]

ELECTIVE_SLOTS: tuple[str, ...] = ("x1", "x2", "x3")

PROFILE_SHEET = "UserProfile"
STUDENT_SHEET = "Sheet1"
UNPROCESSED_SHEET = "Unprocessed"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class WorkloadOutcome:
    data: pd.DataFrame
    unprocessed: list[UnprocessedRow] = field(default_factory=list)
    rows_read: int = 0


@dataclass
class RunSummary:
    """
    Produced after every run. Surfaces all counts and every unprocessed row.
    """
    timestamp: str
    input_files: dict[str, str]
    workload_rows: int
    user_profile_rows: int
    first_level_invalid_count: int
    sub_codes_replaced: int
    student_records: int
    appended_records: int
    unprocessed: list[UnprocessedRow]
    match_kinds: dict[str, int]
    deferred_stored: int
    deferred_recovered: dict[str, int]

    @property
    def processed_count(self) -> int:
        return self.student_records + self.appended_records

    @property
    def unprocessed_count(self) -> int:
        return len(self.unprocessed)

    def unprocessed_by_kind(self) -> dict[str, int]:
        return dict(sorted(Counter(r.kind for r in self.unprocessed).items()))

    def as_text(self) -> str:
        lines = [
            "═" * 60,
            "ROSTERSYNC RUN SUMMARY",
            "═" * 60,
            f"Generated       : {self.timestamp}",
            "",
            "INPUT FILES",
        ]
        if not self.input_files:
            lines.append("  (in-memory frames)")
        for label, ident in self.input_files.items():
            lines.append(f"  {label:<14}: {ident}")
        lines += [
            "",
            "PROCESSING TOTALS",
            f"  Workload rows read       : {self.workload_rows}",
            f"  User profile rows        : {self.user_profile_rows}",
            f"  Student records          : {self.student_records}",
            f"  Appended elective records: {self.appended_records}",
            f"  Processed (total)        : {self.processed_count}",
            f"  Unprocessed              : {self.unprocessed_count}",
            "",
            "STRUCTURAL VERIFICATION",
            f"  First-level invalid rows : {self.first_level_invalid_count}",
            f"  Sub-codes replaced       : {self.sub_codes_replaced}",
            "",
            "RESOLUTION MATCH KINDS",
        ]
        if not self.match_kinds:
            lines.append("  None")
        for kind, count in self.match_kinds.items():
            lines.append(f"  {kind}: {count}")
        lines += [
            "",
            "DEFERRED RECONCILIATION",
            f"  Entries stored           : {self.deferred_stored}",
        ]
        for subject, count in self.deferred_recovered.items():
            lines.append(f"  Recovered via {subject:<10} : {count}")
        lines += ["", "UNPROCESSED ROWS BY KIND"]
        if not self.unprocessed:
            lines.append("  None")
        for kind, count in self.unprocessed_by_kind().items():
            lines.append(f"  {kind}: {count}")
        if self.unprocessed:
            lines += ["", "UNPROCESSED ROW DETAIL"]
            for entry in self.unprocessed:
                where = f"Row {entry.row_number}" if entry.row_number is not None else "Row -"
                source = f" [{entry.source}]" if entry.source else ""
                lines.append(f"  {where}{source}: {entry.reason}")
        lines.append("═" * 60)
        return "\n".join(lines)


@dataclass
class PipelineResult:
    user_profile: pd.DataFrame
    verified_profile: pd.DataFrame
    records: list[OutputRecord]
    unprocessed: list[UnprocessedRow]
    summary: RunSummary
    events: EventLog

    @property
    def student_profile(self) -> pd.DataFrame:
        return records_to_frame(self.records)

    @property
    def unprocessed_frame(self) -> pd.DataFrame:
        return unprocessed_to_frame(self.unprocessed)


# ---------------------------------------------------------------------------
# Internal utilities
# ---------------------------------------------------------------------------


def _cell(frame: pd.DataFrame, row: int, col: int) -> str:
    if col >= frame.shape[1]:
        return ""
    return cell_text(frame.iat[row, col])


def _records(df: pd.DataFrame) -> list[dict[str, str]]:
    return df.to_dict(orient="records")


def _prepare_frame(df: pd.DataFrame, file_kind: str, label: str) -> pd.DataFrame:
    """Apply column aliases and halt if required fields are still missing."""
    renamed, _ = apply_aliases(df, file_kind)
    missing = missing_required(renamed, file_kind)
    if missing:
        raise ReconciliationError(
            reason="Required columns missing",
            affected_file=label,
            missing_or_invalid_fields=missing,
            operator_fix_steps=[
                f"Add or rename missing column(s): {', '.join(missing)}",
                "Ensure column headers match expected names or known variants.",
            ],
        )
    return renamed


def _form_number(value) -> Optional[int]:
    text = cell_text(value).strip()
    if text.endswith(".0"):
        text = text[:-2]
    return int(text) if text.isdigit() else None


def _class_no_key(value) -> int:
    return leading_number(value) or 0


# ---------------------------------------------------------------------------
# Stage 1: workload -> user profile
# ---------------------------------------------------------------------------


def build_user_profiles(
    workload_sheets: dict[str, pd.DataFrame],
    reference: ReferenceTable,
    events: EventLog,
    source_label: str = "Workload",
) -> WorkloadOutcome:
    """
    Build user-profile rows from the department sheets of the workload
    workbook and resolve each grouping to a sub_code.

    Sheets are frames read without a header (positional columns). Only
    upper-case sheet names are department sheets.
    """
    rows: list[dict[str, str]] = []
    unprocessed: list[UnprocessedRow] = []
    rows_read = 0

    def _add(label: str, staff_code: str, sheet_name: str, excel_row: int) -> None:
        source = f"{source_label}:{sheet_name}"
        candidate = rename_candidate(derive_candidate(label))
        resolved = resolve_grouping(label, reference, events, excel_row, STAGE_WORKLOAD)
        if not candidate:
            unprocessed.append(UnprocessedRow(
                excel_row, NO_CANDIDATE_DERIVED,
                f"Subject code not derived from '{label}' "
                f"(expected 2 or 3 tokens, found {len(tokenize(label))})",
                source,
            ))
        elif not resolved.matched:
            unprocessed.append(UnprocessedRow(
                excel_row, NO_REFERENCE_MATCH,
                f"No sub_code found for subject code '{candidate}' (grouping '{label}')",
                source,
            ))
        rows.append({
            "user": staff_code,
            "sub_code": resolved.sub_code,
            "class": label,
            "grouping": label,
            "grouping_real": label,
        })

    for sheet_name, sheet in workload_sheets.items():
        if not is_valid_sheet_name(sheet_name):
            logger.debug("[pipeline] skipping sheet '%s'", sheet_name)
            continue
        logger.info("[pipeline] processing workload sheet '%s'", sheet_name)
        for r in range(WORKLOAD_HEADER_ROW + 1, sheet.shape[0]):
            rows_read += 1
            left = collapse_whitespace(_cell(sheet, r, WORKLOAD_LABEL_COLUMNS[0]))
            right = collapse_whitespace(_cell(sheet, r, WORKLOAD_LABEL_COLUMNS[1]))
            label = f"{left} {right}".strip()
            if not is_valid_concatenation(label):
                continue
            excel_row = r + 1
            staff_code = extract_staff_code(label)
            _add(label, staff_code, sheet_name, excel_row)

            if sheet_name == COMPOUND_SHEET and COMPOUND_FLAG in _cell(sheet, r, WORKLOAD_FLAG_COLUMN).strip():
                parts = tokenize(label)
                form = leading_number(parts[0])
                form_text = str(form) if form is not None else parts[0]
                extra = f"{form_text} (M2) {' '.join(parts[2:])}".strip()
                _add(extra, staff_code, sheet_name, excel_row)

    ordered = sort_case_insensitive(rows, "user", fold=str.upper)
    data = pd.DataFrame(ordered, columns=USER_PROFILE_COLUMNS)
    logger.info("[pipeline] user profile: %d rows from %d workload rows", len(data), rows_read)
    return WorkloadOutcome(data=data, unprocessed=unprocessed, rows_read=rows_read)


# ---------------------------------------------------------------------------
# Stage 3: student profile from class list + deferred recovery
# ---------------------------------------------------------------------------


def reconcile_students(
    profile: pd.DataFrame,
    class_list: pd.DataFrame,
    reference: ReferenceTable,
    events: EventLog,
    store: DeferredStore,
) -> RecordBuilder:
    """
    One record per (eligible profile row, matching class-list student).

    Profile rows with no class-list match are deferred and later recovered
    per subject, then through the compound-subject (M2) pass.
    """
    builder = RecordBuilder(STAGE_STUDENT, events)
    class_rows = _records(class_list)
    class_tokens = [
        f"{cell_text(row.get('form')).strip()}{cell_text(row.get('class')).strip()}"
        for row in class_rows
    ]

    for position, row in enumerate(_records(profile)):
        row_number = position + 2
        class_field = cell_text(row.get("class"))
        sub_code = cell_text(row.get("sub_code")).strip()

        if not is_eligible(class_field):
            builder.withhold(
                row_number, INELIGIBLE_CLASS,
                "Ineligible class format. Expected exactly 3 tokens with the first "
                f"token's numeric part between 1 and 6. Value found: '{class_field}'",
                source="user_profile",
            )
            continue

        token = extract_leading_group(class_field)
        matching = [class_rows[i] for i, t in enumerate(class_tokens) if t == token]

        if not matching:
            record = store.add_class_field(class_field, sub_code, row_number)
            builder.withhold(
                row_number, NO_CLASS_MATCH,
                f"Eligible row but no matching class found in class list for token: "
                f"'{token}'. Subject: '{record.subject}', Teacher: '{record.teacher}'",
                source="user_profile",
            )
            continue

        subject_code = reference.subject_for(sub_code)
        if not sub_code or not subject_code:
            builder.withhold(
                row_number, MISSING_CODES,
                f"Class '{class_field}' matched {len(matching)} students but "
                f"sub_code '{sub_code}' has no subject_code",
                source="user_profile",
            )
            continue

        matching.sort(key=lambda m: _class_no_key(m.get("class_no")))
        for match in matching:
            builder.build(match.get("tsss_id"), sub_code, subject_code, class_field, row_number, "user_profile")

    for subject in RECOVERY_SUBJECTS:
        logger.info("[pipeline] searching deferred entries for subject %s", subject)
        for position, row in enumerate(class_rows):
            teacher = cell_text(row.get(subject)).strip()
            if not teacher:
                continue
            entry = store.recover(row.get("form"), cell_text(row.get("class")).strip(), subject, teacher, position + 2)
            if entry is None:
                continue
            builder.build(
                row.get("tsss_id"),
                entry.sub_code,
                reference.subject_for(entry.sub_code),
                entry.grouping,
                position + 2,
                "class_list",
            )

    candidates = store.single_digit_candidates()
    logger.info("[pipeline] %d single-digit (M2) deferred candidates", len(candidates))
    for position, row in enumerate(class_rows):
        form_number = _form_number(row.get("form"))
        if form_number is None or form_number <= COMPOUND_FORM_FLOOR:
            continue
        if COMPOUND_COLUMN_MARKER not in cell_text(row.get("compound_subject")):
            continue
        match = first_candidate_for_form(candidates, form_number)
        if match is None:
            logger.debug("[pipeline] form %d: no (M2) teacher found", form_number)
            continue
        events.record(
            STAGE_STUDENT, DEFERRED_RECOVERED, position + 2,
            subject=match.subject, group=match.group, teacher=match.teacher,
        )
        builder.build(
            row.get("tsss_id"),
            COMPOUND_SUB_CODE,
            COMPOUND_SUBJECT_CODE,
            f"{form_number} {match.subject} {match.teacher}",
            position + 2,
            "class_list",
        )

    return builder


# ---------------------------------------------------------------------------
# Stage 4: elective slots through the frequency index
# ---------------------------------------------------------------------------


def append_electives(
    profile: pd.DataFrame,
    class_list: pd.DataFrame,
    reference: ReferenceTable,
    events: EventLog,
) -> RecordBuilder:
    """
    For each class-list row with an elective slot set, query Form + slot
    against the frequency index of the verified profile.
    """
    builder = RecordBuilder(STAGE_APPEND, events)
    index = FrequencyIndex.build(_records(profile))

    for position, row in enumerate(_records(class_list)):
        row_number = position + 2
        slots = [cell_text(row.get(slot)).strip() for slot in ELECTIVE_SLOTS]
        if not any(slots):
            continue
        form = cell_text(row.get("form")).strip()
        for slot_name, slot in zip(ELECTIVE_SLOTS, slots):
            if not slot:
                continue
            query = f"{form}{slot}"
            result = index.find_matches(query)
            if not (result.found and result.sub_codes and result.keys):
                events.record(STAGE_APPEND, MATCH_MISSING, row_number, query=query, slot=slot_name)
                continue
            grouping = result.displays[0]
            sub_code = convert_sub_code(result.sub_codes[0].strip())
            events.record(
                STAGE_APPEND, MATCH_APPLIED, row_number,
                query=query, match_kind=MATCH_CONTAINS, matches=result.matches,
                sub_code=sub_code,
            )
            builder.build(
                row.get("tsss_id"), sub_code, reference.subject_for(sub_code),
                grouping, row_number, f"class_list:{slot_name.upper()}",
            )

    return builder


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def run_reconciliation(
    workload_sheets: dict[str, pd.DataFrame],
    reference_df: pd.DataFrame,
    class_list_df: pd.DataFrame,
    input_files: Optional[dict[str, str]] = None,
) -> PipelineResult:
    """
    Run all four stages over already-loaded frames. Performs no I/O.

    Parameters
    ----------
    workload_sheets : dict[str, pd.DataFrame]
        Workload workbook sheets read without headers, all cells text.
    reference_df : pd.DataFrame
        Sub-code/subject table (raw headers; aliases resolved here).
    class_list_df : pd.DataFrame
        Class list (raw headers; aliases resolved here).
    input_files : dict, optional
        Label -> identity string, shown in the summary.

    Raises
    ------
    ReconciliationError
        If a required column is missing after alias resolution.
    """
    events = EventLog()
    timestamp = datetime.now().isoformat(timespec="seconds")

    reference_frame = _prepare_frame(reference_df, REFERENCE, "Reference table")
    class_frame = _prepare_frame(class_list_df, CLASS_LIST, "Class list")
    reference = ReferenceTable.from_frame(reference_frame)

    workload = build_user_profiles(workload_sheets, reference, events)

    verification = verify_rows(workload.data, events)
    verified = verification.data
    structural = [
        UnprocessedRow(r.row_number, STRUCTURAL_INVALID, r.reason, "user_profile")
        for r in verification.invalid_results
    ]

    store = DeferredStore(events)
    students = reconcile_students(verified, class_frame, reference, events, store)
    electives = append_electives(verified, class_frame, reference, events)

    records = sort_case_insensitive(students.records + electives.records, "grouping")
    unprocessed = workload.unprocessed + structural + students.unprocessed + electives.unprocessed

    recovered = Counter(e.detail.get("subject", "") for e in events.of_kind(DEFERRED_RECOVERED))
    summary = RunSummary(
        timestamp=timestamp,
        input_files=dict(input_files or {}),
        workload_rows=workload.rows_read,
        user_profile_rows=len(workload.data),
        first_level_invalid_count=verification.first_level_invalid_count,
        sub_codes_replaced=events.count(SUB_CODE_REPLACED),
        student_records=len(students.records),
        appended_records=len(electives.records),
        unprocessed=unprocessed,
        match_kinds=events.match_kind_counts(),
        deferred_stored=events.count(DEFERRED_STORED),
        deferred_recovered=dict(recovered),
    )
    logger.info(
        "[pipeline] %d records, %d unprocessed, %d candidates missing",
        len(records), len(unprocessed), events.count(CANDIDATE_MISSING),
    )

    return PipelineResult(
        user_profile=workload.data,
        verified_profile=verified,
        records=records,
        unprocessed=unprocessed,
        summary=summary,
        events=events,
    )


def run_pipeline(settings: Settings, write: bool = True) -> PipelineResult:
    """
    Load every input named by the settings, reconcile, then write outputs.

    All inputs are read before any stage runs and all outputs are written
    after every stage completed, so a failure leaves no artifact behind.
    """
    workload_sheets = read_all_sheets_raw(settings.workload_file, "Workload")
    reference_df = read_first_sheet(settings.reference_file, "Reference table")
    class_list_df = read_first_sheet(settings.class_list_file, "Class list")

    input_files = {
        "Workload": f"{settings.workload_file.name} ({file_hash(settings.workload_file)})",
        "Reference": f"{settings.reference_file.name} ({file_hash(settings.reference_file)})",
        "Class list": f"{settings.class_list_file.name} ({file_hash(settings.class_list_file)})",
    }

    result = run_reconciliation(workload_sheets, reference_df, class_list_df, input_files)

    if write:
        artifacts = {
            settings.student_profile_file: {
                STUDENT_SHEET: result.student_profile,
                UNPROCESSED_SHEET: result.unprocessed_frame,
            },
        }
        if settings.user_profile_file is not None:
            artifacts[settings.user_profile_file] = {PROFILE_SHEET: result.user_profile}
        if settings.verified_profile_file is not None:
            artifacts[settings.verified_profile_file] = {PROFILE_SHEET: result.verified_profile}
        write_workbooks(artifacts)

    return result


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="rostersync",
        description="Reconcile teacher workload groupings into a student profile workbook.",
    )
    parser.add_argument("--config", default="rostersync.yaml", help="Settings file (YAML or JSON).")
    parser.add_argument("--dry-run", action="store_true", help="Run every stage but write nothing.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every resolution decision.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        settings = load_settings(args.config)
        result = run_pipeline(settings, write=not args.dry_run)
    except ReconciliationError as e:
        print(str(e))
        return 2

    print(result.summary.as_text())
    if not args.dry_run:
        print(f"\nStudent profile written to {settings.student_profile_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
