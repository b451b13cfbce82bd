"""
Workbook I/O

Thin pandas/openpyxl shell around the reconciliation core.

CONTRACT
--------
- Every cell is read as text. Empty cells are "" (never NaN/None).
- Unreadable inputs and unwritable outputs are the only fatal errors.
  They raise ReconciliationError.
- Outputs are written to a temporary sibling and moved into place, so a
  failed write never leaves a partial artifact. A failed move rolls back
  the destinations already replaced, so the output set changes as a whole
  or not at all.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd

logger = logging.getLogger(__name__)

EXCEL_ENGINE = "openpyxl"


@dataclass
class ReconciliationError(Exception):
    """Structured halt error for collaborator-level failures."""
    reason: str
    affected_file: str
    missing_or_invalid_fields: list[str]
    operator_fix_steps: list[str]

    def __str__(self) -> str:
        lines = [
            "═" * 60,
            "ROSTERSYNC RECONCILIATION HALT",
            "═" * 60,
            f"Reason          : {self.reason}",
            f"Affected File   : {self.affected_file}",
        ]
        if self.missing_or_invalid_fields:
            lines.append(f"Missing/Invalid : {', '.join(self.missing_or_invalid_fields)}")
        lines.append("Fix Steps:")
        for i, step in enumerate(self.operator_fix_steps, 1):
            lines.append(f"  {i}. {step}")
        lines.append("═" * 60)
        return "\n".join(lines)


def _ensure_exists(path: Path, label: str) -> None:
    if not path.exists():
        raise ReconciliationError(
            reason=f"{label} file not found",
            affected_file=str(path),
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                f"Verify the path is correct: {path}",
                "Check the file name in the settings file.",
            ],
        )


def _as_text_frame(df: pd.DataFrame) -> pd.DataFrame:
    df = df.fillna("").astype(str)
    df.columns = [str(c).strip() for c in df.columns]
    return df


def read_first_sheet(path, label: str) -> pd.DataFrame:
    """First worksheet of a workbook (or a CSV) as an all-text frame."""
    path = Path(path)
    _ensure_exists(path, label)
    try:
        if path.suffix.lower() == ".csv":
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(path, sheet_name=0, dtype=str, keep_default_na=False, engine=EXCEL_ENGINE)
    except Exception as e:
        raise ReconciliationError(
            reason=f"{label} file is not parseable",
            affected_file=str(path),
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                "Verify the file is a valid .xlsx workbook or CSV.",
                f"Parse error: {e}",
            ],
        ) from e
    logger.info("[workbook_io] %s: %d rows from %s", label, len(df), path.name)
    return _as_text_frame(df)


def read_all_sheets_raw(path, label: str) -> dict[str, pd.DataFrame]:
    """
    Every worksheet without a header row, all cells as text.

    Positional access is preserved: column 0 is Excel column A, row 0 is
    Excel row 1.
    """
    path = Path(path)
    _ensure_exists(path, label)
    try:
        sheets = pd.read_excel(
            path, sheet_name=None, header=None, dtype=str,
            keep_default_na=False, engine=EXCEL_ENGINE,
        )
    except Exception as e:
        raise ReconciliationError(
            reason=f"{label} file is not parseable",
            affected_file=str(path),
            missing_or_invalid_fields=[],
            operator_fix_steps=[
                "Verify the file is a valid .xlsx workbook.",
                f"Parse error: {e}",
            ],
        ) from e
    logger.info("[workbook_io] %s: %d sheets from %s", label, len(sheets), path.name)
    return {name: sheet.fillna("").astype(str) for name, sheet in sheets.items()}


def _unwritable(path: Path, e: OSError) -> ReconciliationError:
    return ReconciliationError(
        reason="Output file could not be written",
        affected_file=str(path),
        missing_or_invalid_fields=[],
        operator_fix_steps=[
            "Check that the output directory exists and is writable.",
            "Close the workbook if it is open in another program.",
            f"OS error: {e}",
        ],
    )


def _stage_workbook(path: Path, sheets: dict[str, pd.DataFrame]) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=path.suffix or ".xlsx", dir=path.parent)
    os.close(fd)
    try:
        with pd.ExcelWriter(tmp_name, engine=EXCEL_ENGINE) as writer:
            for sheet_name, frame in sheets.items():
                frame.to_excel(writer, sheet_name=sheet_name, index=False)
    except Exception:
        os.unlink(tmp_name)
        raise
    return tmp_name


def _reject_directories(paths: list[Path]) -> None:
    for path in paths:
        if path.is_dir():
            raise ReconciliationError(
                reason="Output path is a directory",
                affected_file=str(path),
                missing_or_invalid_fields=[],
                operator_fix_steps=[
                    "Point the output setting at a file name, not a folder.",
                    f"Or remove the directory: {path}",
                ],
            )


def _promote(staged: list[tuple[Path, str]]) -> None:
    """Move staged files into place; on failure restore what was there before."""
    promoted: list[tuple[Path, Optional[Path]]] = []
    try:
        for path, tmp_name in staged:
            try:
                backup = None
                if path.exists():
                    backup = path.with_name(f".{path.name}.bak")
                    os.replace(path, backup)
                promoted.append((path, backup))
                os.replace(tmp_name, path)
            except OSError as e:
                raise _unwritable(path, e) from e
    except ReconciliationError:
        for path, backup in reversed(promoted):
            if backup is not None:
                os.replace(backup, path)
            elif path.exists():
                os.unlink(path)
        logger.warning("[workbook_io] promotion failed; %d destination(s) rolled back", len(promoted))
        raise
    for _, backup in promoted:
        if backup is not None:
            os.unlink(backup)


def write_workbooks(artifacts: dict[Path, dict[str, pd.DataFrame]]) -> list[Path]:
    """
    Write several workbooks as one unit.

    Every workbook is staged to a temporary sibling first; only when all of
    them were staged are they moved into place. A failed move restores the
    destinations already replaced. Raises ReconciliationError if any
    destination cannot be written, leaving the output set as it was.
    """
    paths = [Path(p) for p in artifacts]
    _reject_directories(paths)
    staged: list[tuple[Path, str]] = []
    try:
        for path, sheets in zip(paths, artifacts.values()):
            try:
                staged.append((path, _stage_workbook(path, sheets)))
            except OSError as e:
                raise _unwritable(path, e) from e
        _promote(staged)
    finally:
        for _, tmp_name in staged:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
    for path, sheets in zip(paths, artifacts.values()):
        logger.info("[workbook_io] wrote %s (%s)", path.name, ", ".join(sheets))
    return paths


def write_workbook(path, sheets: dict[str, pd.DataFrame]) -> Path:
    return write_workbooks({Path(path): sheets})[0]


def file_hash(path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()[:12]
