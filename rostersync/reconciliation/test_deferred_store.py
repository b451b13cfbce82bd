"""Deferred reconciliation store."""

from deferred_store import DeferredStore, GroupingRecord, first_candidate_for_form
from run_events import DEFERRED_RECOVERED, DEFERRED_STORED, EventLog


class TestStore:
    def test_add_from_class_field(self):
        store = DeferredStore()
        record = store.add_class_field("3A CHI NEW", "CHN1")
        assert record == GroupingRecord("3A", "CHI", "NEW", "CHN1")
        assert record.grouping == "3A CHI NEW"
        assert store.bucket("3A") == [record]

    def test_same_prefix_never_merged(self):
        store = DeferredStore()
        store.add_class_field("3A CHI NEW", "CHN1")
        store.add_class_field("3A CHI NEW", "CHN1")
        store.add_class_field("3A ENG OLD", "ENN1")
        assert len(store.bucket("3A")) == 3
        assert len(store) == 3

    def test_insertion_order(self):
        store = DeferredStore()
        for field in ("4B ENG AAA", "3A CHI NEW", "4B RSE BBB"):
            store.add_class_field(field, "X")
        assert store.groups() == ["4B", "3A"]
        assert [r.subject for r in store.entries()] == ["ENG", "RSE", "CHI"]

    def test_bucket_is_a_copy(self):
        store = DeferredStore()
        store.add_class_field("3A CHI NEW", "CHN1")
        store.bucket("3A").clear()
        assert len(store) == 1

    def test_stored_event(self):
        events = EventLog()
        DeferredStore(events).add_class_field("3A CHI NEW", "CHN1", row_number=7)
        assert events.of_kind(DEFERRED_STORED)[0].row_number == 7


class TestSearch:
    def test_recovers_by_form_letter_subject_teacher(self):
        store = DeferredStore()
        store.add_class_field("3A CHI NEW", "CHN1")
        found = store.search(3, "A", "CHI", "NEW")
        assert found is not None
        assert found.grouping == "3A CHI NEW"

    def test_form_must_be_first_char(self):
        store = DeferredStore()
        store.add_class_field("3A CHI NEW", "CHN1")
        assert store.search("4", "A", "CHI", "NEW") is None

    def test_letter_containment(self):
        store = DeferredStore()
        store.add_class_field("4MJPW4 ENG OLD", "DENG1")
        assert store.search("4", "J", "ENG", "OLD") is not None
        assert store.search("4", "Z", "ENG", "OLD") is None

    def test_subject_and_teacher_exact(self):
        store = DeferredStore()
        store.add_class_field("3A CHI NEW", "CHN1")
        assert store.search("3", "A", "CHI", "NEWER") is None
        assert store.search("3", "A", "ENG", "NEW") is None

    def test_first_across_scan_order(self):
        store = DeferredStore()
        store.add_class_field("3AB CHI NEW", "FIRST")
        store.add_class_field("3A CHI NEW", "SECOND")
        assert store.search("3", "A", "CHI", "NEW").sub_code == "FIRST"

    def test_search_is_read_only(self):
        store = DeferredStore()
        store.add_class_field("3A CHI NEW", "CHN1")
        store.search("3", "A", "CHI", "NEW")
        store.search("3", "A", "CHI", "NEW")
        assert len(store) == 1

    def test_recover_records_event(self):
        events = EventLog()
        store = DeferredStore(events)
        store.add_class_field("3A CHI NEW", "CHN1")
        assert store.recover("3", "A", "CHI", "NEW", row_number=9) is not None
        assert store.recover("3", "A", "CHI", "NOPE") is None
        recovered = events.of_kind(DEFERRED_RECOVERED)
        assert len(recovered) == 1
        assert recovered[0].detail["subject"] == "CHI"


class TestCompoundCandidates:
    def test_single_digit_with_marker(self):
        store = DeferredStore()
        store.add_class_field("4 (M2) SUW", "DMA21")
        store.add_class_field("4A (M2) ABC", "DMA21")
        store.add_class_field("45 (M2) XYZ", "DMA21")
        store.add_class_field("5 CHI NEW", "CHN1")
        candidates = store.single_digit_candidates()
        assert [c.teacher for c in candidates] == ["SUW", "ABC"]

    def test_first_candidate_for_form(self):
        candidates = [
            GroupingRecord("4", "(M2)", "SUW", "DMA21"),
            GroupingRecord("5", "(M2)", "ABC", "DMA21"),
            GroupingRecord("5", "(M2)", "XYZ", "DMA21"),
        ]
        assert first_candidate_for_form(candidates, 5).teacher == "ABC"
        assert first_candidate_for_form(candidates, 6) is None
