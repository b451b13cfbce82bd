"""Two-level structural verification."""

import pandas as pd
import pytest

from run_events import ROW_INVALID, SUB_CODE_REPLACED, EventLog
from structural_verifier import (
    FIRST_LEVEL_CHECKED,
    SECOND_LEVEL_CHECKED,
    UNCHECKED,
    VerificationResult,
    first_level_check,
    second_level_check,
    verify_rows,
)


def make_df(rows: list[tuple[str, str]]) -> pd.DataFrame:
    return pd.DataFrame(
        [{"user": "SUW", "sub_code": sub, "class": cls, "grouping": cls} for cls, sub in rows]
    )


class TestFirstLevel:
    def test_upper_form_without_d_is_invalid_and_kept(self):
        # PHY1 is not in the first-level table
        result = first_level_check("7Z", "PHY1", 2)
        assert not result.valid
        assert result.sub_code == "PHY1"
        assert result.state == FIRST_LEVEL_CHECKED

    def test_lower_form_with_d_is_invalid_and_replaced(self):
        result = first_level_check("2A MATHS SUW", "DMA11", 2)
        assert not result.valid
        assert result.sub_code == "MATH"

    def test_lowercase_d_counts(self):
        assert not first_level_check("2A X Y", "dma11", 2).valid
        assert first_level_check("5A X Y", "dma11", 2).valid

    def test_override_lookup_case_insensitive(self):
        assert first_level_check("2A X Y", "dma11", 2).sub_code == "MATH"

    def test_missing_class_number(self):
        result = first_level_check("ZZ", "MATH", 3)
        assert not result.valid
        assert "class number" in result.reason

    @pytest.mark.parametrize("cls,sub", [("3A X Y", "MATH"), ("4A X Y", "DMA11"), ("6 X Y", "DPED1")])
    def test_valid(self, cls, sub):
        result = first_level_check(cls, sub, 2)
        assert result.valid
        assert result.sub_code == sub

    def test_invalid_row_recorded(self):
        events = EventLog()
        first_level_check("2A X Y", "DMA11", 5, events)
        assert events.count(ROW_INVALID) == 1
        assert events.count(SUB_CODE_REPLACED) == 1


class TestSecondLevel:
    def test_replaces_current_sub_code(self):
        result = second_level_check(first_level_check("5A X Y", "DMA11", 2))
        assert result.sub_code == "DMATH1"
        assert result.original_sub_code == "DMA11"
        assert result.changed
        assert result.state == SECOND_LEVEL_CHECKED

    def test_requires_first_level(self):
        result = VerificationResult(row_number=2, original_sub_code="X", sub_code="X", state=UNCHECKED)
        with pytest.raises(ValueError):
            second_level_check(result)

    def test_sees_first_level_output(self):
        # CHN1 on form 4 -> DCHIN1 at first level; second level must not see CHN1
        result = second_level_check(first_level_check("4A CHI NEW", "CHN1", 2))
        assert result.sub_code == "DCHIN1"

    def test_applies_to_valid_rows(self):
        result = second_level_check(first_level_check("5A X Y", "DPED3", 2))
        assert result.valid
        assert result.sub_code == "DPED31"


class TestVerifyRows:
    def test_counts_and_keeps_invalid_rows(self):
        df = make_df([("7Z X Y", "PHY1"), ("5A X Y", "DMA11"), ("2A X Y", "DMA11")])
        outcome = verify_rows(df, EventLog())
        assert outcome.first_level_invalid_count == 2
        assert len(outcome.data) == 3
        assert outcome.data["sub_code"].tolist() == ["PHY1", "DMATH1", "MATH"]
        assert [r.row_number for r in outcome.invalid_results] == [2, 4]

    def test_input_frame_untouched(self):
        df = make_df([("5A X Y", "DMA11")])
        verify_rows(df)
        assert df["sub_code"].tolist() == ["DMA11"]

    def test_all_results_terminal(self):
        df = make_df([("7Z X Y", "PHY1"), ("5A X Y", "DMA11")])
        outcome = verify_rows(df)
        assert {r.state for r in outcome.results} == {SECOND_LEVEL_CHECKED}
