"""
CaseCompass - Timeline Gap Analysis Tests
"""

from datetime import date

from app.core.utc import parse_event_date
from app.services.timeline import DatedItem, analyze_gaps, gap_severity, recommended_categories


def _events(*pairs):
    return [DatedItem(event_date=date.fromisoformat(d), category=c) for d, c in pairs]


class TestAnalyzeGaps:

    def test_no_events(self):
        assert analyze_gaps([]) == {
            "gaps": [],
            "category_density": {},
            "missing_categories": [],
            "total_events": 0,
        }

    def test_finds_gaps_longer_than_threshold(self):
        events = _events(
            ("2024-01-01", "incident"),
            ("2024-01-20", "communication"),
            ("2024-06-01", "incident"),
        )
        result = analyze_gaps(events, gap_days=30)
        assert len(result["gaps"]) == 1
        gap = result["gaps"][0]
        assert gap["start"] == "2024-01-20"
        assert gap["end"] == "2024-06-01"
        assert gap["days"] == 133
        assert gap["severity"] == "high"

    def test_events_are_sorted_first(self):
        events = _events(("2024-03-01", "incident"), ("2024-01-01", "incident"))
        result = analyze_gaps(events, gap_days=30)
        assert result["gaps"][0]["start"] == "2024-01-01"

    def test_gap_exactly_at_threshold_is_not_a_gap(self):
        events = _events(("2024-01-01", "incident"), ("2024-01-31", "incident"))
        assert analyze_gaps(events, gap_days=30)["gaps"] == []

    def test_category_density(self):
        events = _events(
            ("2024-01-01", "incident"),
            ("2024-01-02", "incident"),
            ("2024-01-03", "incident"),
            ("2024-01-04", "financial"),
            ("2024-01-05", "communication"),
            ("2024-01-06", "communication"),
            ("2024-01-07", "other"),
            ("2024-01-08", "other"),
            ("2024-01-09", "other"),
            ("2024-01-10", "other"),
        )
        density = analyze_gaps(events)["category_density"]
        assert density["incident"] == {"count": 3, "strength": "moderate"}
        assert density["other"] == {"count": 4, "strength": "strong"}
        assert density["financial"] == {"count": 1, "strength": "weak"}

    def test_missing_categories_follow_goal(self):
        events = _events(("2024-01-01", "incident"), ("2024-01-02", "incident"))
        result = analyze_gaps(events, goal="Apply for an AVO")
        assert result["missing_categories"] == ["threat", "coercive_control", "communication"]


def test_gap_severity_bands():
    assert gap_severity(31) == "low"
    assert gap_severity(61) == "medium"
    assert gap_severity(91) == "high"


def test_recommended_categories_by_goal():
    assert recommended_categories(None) == ["communication", "incident", "document"]
    assert recommended_categories("custody of my son") == ["child_welfare", "communication", "medical", "incident"]
    assert recommended_categories("divorce settlement") == ["financial", "property", "communication", "incident"]


def test_parse_event_date():
    assert parse_event_date("2024-02-29") == date(2024, 2, 29)
    assert parse_event_date("2023-02-29") is None
    assert parse_event_date("yesterday") is None
    assert parse_event_date(None) is None
