"""
CaseCompass - Case Memory Tests
Exhibit codes, evidence index merging, thread summaries and proactive triggers.
"""

from datetime import date

import pytest

from app.services.memory import (
    choose_exhibit_code,
    exhibit_code,
    normalize_mentioned_date,
    person_appearances,
    roll_thread_summary,
    timeline_context,
    upsert_evidence_entry,
)


# =============================================================================
# Exhibit Codes
# =============================================================================

@pytest.mark.parametrize("position,code", [(0, "A"), (1, "B"), (25, "Z"), (26, "AA"), (27, "AB"), (51, "AZ"), (52, "BA")])
def test_exhibit_codes(position, code):
    assert exhibit_code(position) == code


def test_exhibit_code_rejects_negative():
    with pytest.raises(ValueError):
        exhibit_code(-1)


class TestChooseExhibitCode:

    def test_follows_upload_position(self):
        index = [{"file_id": "f1", "exhibit_code": "A"}]
        assert choose_exhibit_code(index, "f2", 1) == "B"

    def test_file_keeps_its_code(self):
        index = [{"file_id": "f1", "exhibit_code": "C"}]
        assert choose_exhibit_code(index, "f1", 0) == "C"

    def test_taken_position_falls_back_to_lowest_free_code(self):
        # A was deleted; B is still held by the second upload
        index = [{"file_id": "f2", "exhibit_code": "B"}]
        assert choose_exhibit_code(index, "f3", 1) == "A"

    def test_entries_without_codes_are_ignored(self):
        index = [{"file_id": "f1"}, {"file_id": "f2", "exhibit_code": "A"}]
        assert choose_exhibit_code(index, "f3", 0) == "B"


# =============================================================================
# Evidence Index
# =============================================================================

class TestUpsertEvidenceEntry:

    def test_adds_new_entry(self):
        index = upsert_evidence_entry([], {"file_id": "f1", "file_name": "a.txt"})
        assert index == [{"file_id": "f1", "file_name": "a.txt"}]

    def test_replaces_entry_for_same_file(self):
        index = [{"file_id": "f1", "exhibit_code": "A", "summary": "old"}, {"file_id": "f2"}]
        updated = upsert_evidence_entry(index, {"file_id": "f1", "summary": "new"})
        assert len(updated) == 2
        entry = next(e for e in updated if e["file_id"] == "f1")
        assert entry == {"file_id": "f1", "exhibit_code": "A", "summary": "new"}

    def test_does_not_mutate_input(self):
        index = [{"file_id": "f1"}]
        upsert_evidence_entry(index, {"file_id": "f1", "summary": "x"})
        assert index == [{"file_id": "f1"}]


# =============================================================================
# Thread Summary
# =============================================================================

class TestRollThreadSummary:

    def test_first_entry(self):
        summary = roll_thread_summary(None, "What is coercive control?", today=date(2024, 5, 1))
        assert summary == "2024-05-01: What is coercive control?..."

    def test_long_text_is_truncated(self):
        summary = roll_thread_summary("", "x" * 200, today=date(2024, 5, 1))
        assert summary == "2024-05-01: " + "x" * 50 + "..."

    def test_capped_length(self):
        summary = "2024-01-01: a. 2024-01-02: b. 2024-01-03: c. 2024-01-04: d"
        for _ in range(10):
            summary = roll_thread_summary(summary, "another question about my ADVO application", today=date(2024, 5, 1))
        assert len(summary) <= 120


# =============================================================================
# Proactive Triggers
# =============================================================================

def test_normalize_mentioned_date_is_day_first():
    assert normalize_mentioned_date("03/04/2024") == "2024-04-03"
    assert normalize_mentioned_date("2024-04-03") == "2024-04-03"
    assert normalize_mentioned_date("3/4/24") == "2024-04-03"
    assert normalize_mentioned_date("31/02/2024") is None


class TestTimelineContext:

    summary = [
        {"date": "2024-04-03", "title": "Phone taken", "fact": "He took my phone"},
        {"date": "2024-06-10", "title": "Threat by text", "fact": "Threatening message"},
    ]

    def test_matches_mentioned_date(self):
        text = timeline_context("What happened on 3/4/2024?", self.summary)
        assert text.startswith("TIMELINE CONTEXT for 3/4/2024:")
        assert "Phone taken" in text
        assert "Threat by text" not in text

    def test_no_dates_no_context(self):
        assert timeline_context("What should I do next?", self.summary) == ""

    def test_no_timeline_no_context(self):
        assert timeline_context("On 3/4/2024 he yelled", []) == ""


class TestPersonAppearances:

    blocks = [
        "[CITATION 1] texts.txt#0: Mary Smith said he was outside the house",
        "[CITATION 2] diary.txt#0: Nothing about her here",
    ]

    def test_lists_citations_mentioning_person(self):
        text = person_appearances("What did Mary Smith see?", self.blocks)
        assert "MARY SMITH APPEARANCES:" in text
        assert "Citation 1" in text
        assert "Citation 2" not in text

    def test_unknown_person(self):
        assert person_appearances("Did John Brown call?", self.blocks) == ""
