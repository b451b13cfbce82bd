"""
Code mapping resolver.

Tests cover:
- Strategy priority (DSE override beats a reference contains-match)
- Special exact cases, including the fixed M2 pair
- Historical-subject rules in literal order
- Reference lookup: first exact or containing row in scan order wins
- convert_sub_code identity and idempotence
- Event recording per decision
"""

import pandas as pd
import pytest

from code_resolver import (
    CONVERSION_LOOKUP,
    DSE_LOOKUP,
    MATCH_CONTAINS,
    MATCH_EXACT,
    MATCH_NONE,
    MATCH_OVERRIDE,
    MATCH_SPECIAL,
    STRATEGIES,
    ReferenceTable,
    ResolutionContext,
    _build_lookup,
    convert_sub_code,
    dse_override,
    historical_subject_rule,
    rename_candidate,
    resolve_candidate,
    resolve_grouping,
)
from run_events import CANDIDATE_MISSING, MATCH_APPLIED, MATCH_MISSING, OVERRIDE_FIRED, EventLog


def make_reference(rows: list[tuple[str, str]]) -> ReferenceTable:
    return ReferenceTable(rows)


def standard_reference() -> ReferenceTable:
    return make_reference([
        ("DMA11", "DMATH1"),
        ("MATH", "MATH"),
        ("DPED1", "DPE"),
        ("XPE1", "DSE-PE1"),
        ("CHN1", "CHIN"),
        ("DCI11", "DCHIST"),
        ("REGS", "REGS1"),
    ])


class TestTables:
    def test_lookups_upper_cased(self):
        for key in list(DSE_LOOKUP) + list(CONVERSION_LOOKUP):
            assert key == key.upper()

    def test_conflicting_keys_raise(self):
        with pytest.raises(ValueError, match="conflict"):
            _build_lookup("demo", {"abc": "X", "ABC": "Y"})

    def test_same_target_is_not_a_conflict(self):
        assert _build_lookup("demo", {"abc": "X", "ABC": "X"}) == {"ABC": "X"}

    def test_strategy_order(self):
        assert [name for name, _ in STRATEGIES] == [
            "dse_override",
            "special_exact_case",
            "historical_subject_rule",
            "reference_lookup",
        ]


class TestReferenceTable:
    def test_from_frame(self):
        df = pd.DataFrame({"sub_code": ["A1", "B1"], "subject_code": ["AA", "BB"]})
        table = ReferenceTable.from_frame(df)
        assert len(table) == 2
        assert table.subject_for("B1") == "BB"

    def test_subject_for_missing_is_empty(self):
        assert standard_reference().subject_for("NOPE") == ""

    def test_subject_for_last_wins(self):
        table = make_reference([("A1", "FIRST"), ("A1", "SECOND")])
        assert table.subject_for("A1") == "SECOND"

    def test_earlier_contains_beats_later_exact(self):
        table = make_reference([("S1", "MATHS"), ("S2", "MATH")])
        assert table.search_subject_column("MATH") == ("S1", "MATHS", MATCH_CONTAINS)

    def test_exact_when_first_in_scan_order(self):
        table = make_reference([("S2", "MATH"), ("S1", "MATHS")])
        assert table.search_subject_column("MATH") == ("S2", "MATH", MATCH_EXACT)

    def test_first_contains_wins(self):
        table = make_reference([("S1", "XMATH"), ("S2", "YMATH")])
        assert table.search_subject_column("MATH") == ("S1", "XMATH", MATCH_CONTAINS)

    def test_no_match(self):
        assert standard_reference().search_subject_column("ZZZ") is None
        assert standard_reference().search_subject_column("") is None


class TestResolveGrouping:
    def test_three_token_maths_contains_match(self):
        table = make_reference([("DMA11", "DMATH1"), ("XX", "ENG")])
        result = resolve_grouping("6MJPWT2 MATHS SUW", table)
        assert result.sub_code == "DMA11"
        assert result.subject_code == "DMATH1"
        assert result.match_kind == MATCH_CONTAINS

    def test_reference_row_order_decides(self):
        table = make_reference([("S1", "MATHS1"), ("S2", "MATH")])
        result = resolve_grouping("6A MATHS SUW", table)
        assert result.sub_code == "S1"
        assert result.match_kind == MATCH_CONTAINS

    def test_m2_special_case_independent_of_reference(self):
        for table in (make_reference([]), standard_reference()):
            result = resolve_grouping("5M2 SUW", table)
            assert (result.sub_code, result.subject_code) == ("DMA21", "DMATH2")
            assert result.match_kind == MATCH_SPECIAL

    def test_chi_special_case_subject_from_reference(self):
        result = resolve_grouping("3A CHI NEW", standard_reference())
        assert (result.sub_code, result.subject_code) == ("CHN1", "CHIN")

    def test_dse_override_beats_contains_match(self):
        # "XPE1" row would be a reference-table exact match for DSE-PE1
        result = resolve_grouping("6DSE-PE1 ABC", standard_reference())
        assert result.sub_code == "DPED1"
        assert result.subject_code == "DPE"
        assert result.match_kind == MATCH_OVERRIDE

    def test_dse_without_marker_in_table_falls_through(self):
        result = resolve_grouping("6DSE-XX ABC", make_reference([("Q1", "DSE-XX")]))
        assert result.sub_code == "Q1"
        assert result.match_kind == MATCH_EXACT

    def test_historical_specific_before_generic(self):
        result = resolve_grouping("4A CHIST3A NEW", standard_reference())
        assert result.sub_code == "DC3A1"
        result = resolve_grouping("4A CHIST3 NEW", standard_reference())
        assert result.sub_code == "DCI31"

    def test_historical_subject_code_from_reference(self):
        result = resolve_grouping("4A CHIST1 NEW", standard_reference())
        assert (result.sub_code, result.subject_code) == ("DCI11", "DCHIST")

    def test_generic_rename_applied(self):
        result = resolve_grouping("2A RSE NEW", standard_reference())
        assert result.sub_code == "REGS"

    def test_no_strategy_fires(self):
        result = resolve_grouping("2A ZZZ NEW", standard_reference())
        assert (result.sub_code, result.subject_code, result.match_kind) == ("", "", MATCH_NONE)
        assert not result.matched

    def test_no_candidate(self):
        result = resolve_grouping("2A", standard_reference())
        assert not result.matched

    def test_deterministic(self):
        table = standard_reference()
        assert resolve_grouping("6MJPWT2 MATHS SUW", table) == resolve_grouping("6MJPWT2 MATHS SUW", table)


class TestStrategiesInIsolation:
    def test_dse_override_requires_marker(self):
        ctx = ResolutionContext(grouping="6X ABC", candidate="DSE-PE1", reference=make_reference([]))
        assert dse_override(ctx) is None

    def test_historical_rule_none(self):
        ctx = ResolutionContext(grouping="", candidate="PHY", reference=make_reference([]))
        assert historical_subject_rule(ctx) is None

    def test_custom_strategy_order(self):
        ctx = ResolutionContext(
            grouping="6DSE-PE1 ABC", candidate="DSE-PE1",
            reference=make_reference([("XPE1", "DSE-PE1")]),
        )
        reversed_strategies = tuple(reversed(STRATEGIES))
        name, result = resolve_candidate(ctx, reversed_strategies)
        assert name == "reference_lookup"
        assert result.sub_code == "XPE1"


class TestConversions:
    def test_rename(self):
        assert rename_candidate("MATHS") == "MATH"
        assert rename_candidate("maths") == "MATH"
        assert rename_candidate("PHY") == "PHY"

    @pytest.mark.parametrize("raw,expected", [
        ("DCHIS1", "DCI11"),
        ("DCHIS3", "DCI31"),
        ("DMA11", "DMA11"),
        ("", ""),
    ])
    def test_convert_sub_code(self, raw, expected):
        assert convert_sub_code(raw) == expected

    @pytest.mark.parametrize("raw", ["DCHIS1", "DCHIS3", "DMA11", "DCI11"])
    def test_convert_idempotent(self, raw):
        assert convert_sub_code(convert_sub_code(raw)) == convert_sub_code(raw)


class TestEvents:
    def test_match_and_override_recorded(self):
        events = EventLog()
        resolve_grouping("6DSE-PE1 ABC", standard_reference(), events, row_number=4, stage="workload")
        assert events.count(MATCH_APPLIED) == 1
        assert events.count(OVERRIDE_FIRED) == 1
        assert events.of_kind(MATCH_APPLIED)[0].row_number == 4
        assert events.match_kind_counts() == {MATCH_OVERRIDE: 1}

    def test_missing_recorded(self):
        events = EventLog()
        resolve_grouping("2A ZZZ NEW", standard_reference(), events)
        assert events.count(MATCH_MISSING) == 1
        assert events.count(MATCH_APPLIED) == 0

    def test_candidate_missing_recorded(self):
        events = EventLog()
        resolve_grouping("1 2 3 4", standard_reference(), events)
        assert events.count(CANDIDATE_MISSING) == 1
