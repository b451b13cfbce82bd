"""Workbook I/O: text-only reads, atomic writes, structured halts."""

import os
import tempfile
from pathlib import Path

import pandas as pd
import pytest

import workbook_io
from workbook_io import (
    ReconciliationError,
    file_hash,
    read_all_sheets_raw,
    read_first_sheet,
    write_workbook,
    write_workbooks,
)


class TestReadFirstSheet:
    def test_excel_cells_are_text(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "classes.xlsx")
            pd.DataFrame({"Form": [3, 4], "Class": ["A", None]}).to_excel(path, index=False)
            df = read_first_sheet(path, "Class list")
            assert df["Form"].tolist() == ["3", "4"]
            assert df["Class"].tolist() == ["A", ""]

    def test_csv(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "ref.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write(" sub_code ,subject_code\nDMA11,DMATH1\nNA,\n")
            df = read_first_sheet(path, "Reference table")
            assert list(df.columns) == ["sub_code", "subject_code"]
            assert df["sub_code"].tolist() == ["DMA11", "NA"]
            assert df["subject_code"].tolist() == ["DMATH1", ""]

    def test_missing_file(self):
        with pytest.raises(ReconciliationError) as exc:
            read_first_sheet("/nonexistent/classes.xlsx", "Class list")
        assert exc.value.reason == "Class list file not found"

    def test_unparseable(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "broken.xlsx")
            with open(path, "wb") as f:
                f.write(b"not a workbook")
            with pytest.raises(ReconciliationError, match="not parseable"):
                read_first_sheet(path, "Class list")


class TestReadAllSheetsRaw:
    def test_positional_access(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "workload.xlsx")
            with pd.ExcelWriter(path) as writer:
                pd.DataFrame([["title"], [""], ["header"], ["data"]]).to_excel(
                    writer, sheet_name="MATHS", index=False, header=False,
                )
                pd.DataFrame([["x"]]).to_excel(writer, sheet_name="Summary", index=False, header=False)
            sheets = read_all_sheets_raw(path, "Workload")
            assert list(sheets) == ["MATHS", "Summary"]
            assert sheets["MATHS"].iat[0, 0] == "title"
            assert sheets["MATHS"].iat[1, 0] == ""
            assert sheets["MATHS"].iat[3, 0] == "data"


class TestWrite:
    def test_multiple_sheets_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out" / "student_profile.xlsx"
            write_workbook(path, {
                "Sheet1": pd.DataFrame({"a": ["1"]}),
                "Unprocessed": pd.DataFrame({"b": ["2"]}),
            })
            assert path.exists()
            assert list(pd.read_excel(path, sheet_name=None)) == ["Sheet1", "Unprocessed"]
            assert [p.name for p in path.parent.iterdir()] == ["student_profile.xlsx"]

    def test_failure_writes_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            good = Path(tmp) / "good.xlsx"
            blocker = Path(tmp) / "blocker"
            blocker.write_text("a file, not a directory")
            bad = blocker / "bad.xlsx"
            with pytest.raises(ReconciliationError, match="could not be written"):
                write_workbooks({
                    good: {"Sheet1": pd.DataFrame({"a": ["1"]})},
                    bad: {"Sheet1": pd.DataFrame({"a": ["1"]})},
                })
            assert sorted(p.name for p in Path(tmp).iterdir()) == ["blocker"]

    def test_directory_destination_writes_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            good = Path(tmp) / "student_profile.xlsx"
            folder = Path(tmp) / "user_profile.xlsx"
            folder.mkdir()
            with pytest.raises(ReconciliationError, match="is a directory"):
                write_workbooks({
                    good: {"Sheet1": pd.DataFrame({"a": ["1"]})},
                    folder: {"UserProfile": pd.DataFrame({"a": ["1"]})},
                })
            assert not good.exists()
            assert folder.is_dir()
            assert sorted(p.name for p in Path(tmp).iterdir()) == ["user_profile.xlsx"]

    def test_failed_move_restores_earlier_outputs(self, monkeypatch):
        with tempfile.TemporaryDirectory() as tmp:
            first = Path(tmp) / "student_profile.xlsx"
            second = Path(tmp) / "user_profile.xlsx"
            write_workbook(first, {"Sheet1": pd.DataFrame({"a": ["old"]})})

            real_replace = os.replace

            def failing_replace(src, dst):
                if Path(dst) == second:
                    raise PermissionError("locked")
                return real_replace(src, dst)

            monkeypatch.setattr(workbook_io.os, "replace", failing_replace)
            with pytest.raises(ReconciliationError, match="could not be written"):
                write_workbooks({
                    first: {"Sheet1": pd.DataFrame({"a": ["new"]})},
                    second: {"UserProfile": pd.DataFrame({"a": ["new"]})},
                })
            monkeypatch.undo()

            assert pd.read_excel(first, sheet_name="Sheet1")["a"].tolist() == ["old"]
            assert not second.exists()
            assert sorted(p.name for p in Path(tmp).iterdir()) == ["student_profile.xlsx"]

    def test_replaces_existing_outputs(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "student_profile.xlsx"
            write_workbook(path, {"Sheet1": pd.DataFrame({"a": ["old"]})})
            write_workbook(path, {"Sheet1": pd.DataFrame({"a": ["new"]})})
            assert pd.read_excel(path, sheet_name="Sheet1")["a"].tolist() == ["new"]
            assert [p.name for p in Path(tmp).iterdir()] == ["student_profile.xlsx"]


class TestReconciliationError:
    def test_str_is_framed(self):
        err = ReconciliationError(
            reason="Required columns missing",
            affected_file="Class list",
            missing_or_invalid_fields=["tsss_id"],
            operator_fix_steps=["Add the column."],
        )
        text = str(err)
        assert "ROSTERSYNC RECONCILIATION HALT" in text
        assert "Missing/Invalid : tsss_id" in text
        assert "1. Add the column." in text


class TestFileHash:
    def test_stable(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "a.bin")
            with open(path, "wb") as f:
                f.write(b"abc")
            assert file_hash(path) == file_hash(path)
            assert len(file_hash(path)) == 12
