"""Tests for ResultNormalizer: alias tolerance and neutral defaults."""

from __future__ import annotations

import copy
from datetime import UTC, datetime

import pytest

from mailsift.models.analysis import (
    ActionType,
    Categorization,
    EmailAnalysis,
    QuickAction,
    ReplyWorthiness,
    SignalStrength,
)
from mailsift.services.normalizer import ResultNormalizer, normalize

CURRENT_ROW = {
    "email_id": "e-1",
    "user_id": "u-1",
    "tokens_used": 900,
    "analyzed_at": "2026-10-18T09:00:00+00:00",
    "categorization": {
        "category": "work",
        "labels": ["needs_reply", "from_vip"],
        "signal_strength": "high",
        "reply_worthiness": "must_reply",
        "quick_action": "respond",
        "summary": "Board deck due Friday.",
        "confidence": 0.92,
    },
    "action_extraction": {
        "has_action": True,
        "actions": [
            {"type": "review", "title": "Review deck", "priority": 2},
            {"type": "respond", "title": "Confirm attendance", "priority": 1},
        ],
        "primary_action_index": 0,
        "urgency_score": 8,
    },
    "client_tagging": {"client_match": True, "client_id": "c-9", "match_confidence": 0.7},
    "event_detection": {"has_event": True, "event_title": "Board meeting", "event_date": "2026-10-24"},
    "news_brief": {"has_news": True, "news_items": [{"headline": "Acme ships v2"}]},
}

LEGACY_ROW = {
    "emailId": "e-1",
    "userId": "u-1",
    "totalTokensUsed": 900,
    "createdAt": "2026-10-18T09:00:00+00:00",
    "categorization": {
        "primaryCategory": "work",
        "labels": ["needs_reply", "from_vip"],
        "signalStrength": "high",
        "replyWorthiness": "must_reply",
        "quickAction": "respond",
        "summary": "Board deck due Friday.",
        "confidence": 0.92,
    },
    "actionExtraction": {
        "hasAction": True,
        "actions": [
            {"actionType": "review", "actionTitle": "Review deck", "priority": 2},
            {"actionType": "respond", "actionTitle": "Confirm attendance", "priority": 1},
        ],
        "primaryActionIndex": 0,
        "urgencyScore": 8,
    },
    "clientTagging": {"clientMatch": True, "clientId": "c-9", "confidence": 0.7},
    "eventDetection": {"hasEvent": True, "title": "Board meeting", "date": "2026-10-24"},
    "newsBrief": {"hasNews": True, "items": [{"title": "Acme ships v2"}]},
}


class TestAliasInvariance:
    """Legacy and current field names normalize to the same record."""

    def test_full_rows_are_identical(self) -> None:
        assert normalize(LEGACY_ROW) == normalize(CURRENT_ROW)

    @pytest.mark.parametrize(
        "slot",
        ["categorization", "action_extraction", "client_tagging", "event_detection", "news_brief"],
    )
    def test_each_slot_is_identical(self, slot: str) -> None:
        assert getattr(normalize(LEGACY_ROW), slot) == getattr(normalize(CURRENT_ROW), slot)

    def test_current_name_wins_when_both_present(self) -> None:
        raw = {"categorization": {"signal_strength": "high", "signalStrength": "low"}}
        assert normalize(raw).categorization.signal_strength == SignalStrength.HIGH

    def test_null_current_name_falls_back_to_alias(self) -> None:
        raw = {"categorization": {"signal_strength": None, "signalStrength": "medium"}}
        assert normalize(raw).categorization.signal_strength == SignalStrength.MEDIUM

    def test_slot_payload_stored_as_json_text(self) -> None:
        raw = {"categorization": '{"category": "finance", "quickAction": "archive"}'}
        cat = normalize(raw).categorization
        assert cat.category == "finance"
        assert cat.quick_action == QuickAction.ARCHIVE


class TestDefaults:
    def test_absent_slots_are_omitted(self) -> None:
        analysis = normalize({"email_id": "e-1", "categorization": {"category": "work"}})
        assert analysis.categorization is not None
        assert analysis.action_extraction is None
        assert analysis.date_extraction is None
        assert analysis.news_brief is None

    def test_empty_payload_gets_neutral_values(self) -> None:
        analysis = normalize({"action_extraction": {}, "date_extraction": {}, "link_analysis": {}})
        assert analysis.action_extraction.has_action is False
        assert analysis.action_extraction.actions == []
        assert analysis.action_extraction.urgency_score == 0
        assert analysis.date_extraction.has_dates is False
        assert analysis.date_extraction.dates == []
        assert analysis.link_analysis.links == []

    def test_garbage_values_never_raise(self) -> None:
        raw = {
            "categorization": {
                "category": 42,
                "labels": "single",
                "signal_strength": "extreme",
                "reply_worthiness": ["nope"],
                "confidence": "very",
            },
            "action_extraction": {"actions": ["Call Bob", 7, None], "urgency_score": "high"},
            "content_digest": {"key_points": [{"point": "a"}, "b"], "links": "not-a-list"},
        }
        analysis = normalize(raw)
        assert analysis.categorization.category == "42"
        assert analysis.categorization.labels == ["single"]
        assert analysis.categorization.signal_strength is None
        assert analysis.categorization.reply_worthiness is None
        assert analysis.categorization.confidence == 0.0
        assert [a.title for a in analysis.action_extraction.actions] == ["Call Bob"]
        assert analysis.action_extraction.urgency_score == 0
        assert [p.point for p in analysis.content_digest.key_points] == ["a", "b"]
        assert analysis.content_digest.links == []

    def test_non_mapping_slot_is_omitted(self) -> None:
        assert normalize({"categorization": ["work"]}).categorization is None

    def test_missing_timestamp_is_none(self) -> None:
        assert normalize({"email_id": "e-1"}).analyzed_at is None


class TestActionReconciliation:
    def test_actions_sorted_by_priority_and_primary_follows(self) -> None:
        extraction = normalize(CURRENT_ROW).action_extraction
        assert [a.title for a in extraction.actions] == ["Confirm attendance", "Review deck"]
        # primary_action_index pointed at "Review deck" in the original order
        assert extraction.primary_action.title == "Review deck"
        assert extraction.primary_action_index == 1
        assert extraction.action_title == "Review deck"
        assert extraction.action_type == ActionType.REVIEW

    def test_unranked_actions_sort_last(self) -> None:
        raw = {"action_extraction": {"actions": [{"title": "later"}, {"title": "first", "priority": 3}]}}
        assert [a.title for a in normalize(raw).action_extraction.actions] == ["first", "later"]

    def test_out_of_range_primary_index_falls_back_to_first(self) -> None:
        raw = {"action_extraction": {"actions": [{"title": "only"}], "primary_action_index": 5}}
        extraction = normalize(raw).action_extraction
        assert extraction.primary_action_index == 0
        assert extraction.action_title == "only"

    def test_legacy_single_action_becomes_list(self) -> None:
        raw = {
            "action_extraction": {
                "hasAction": True,
                "actionType": "pay",
                "actionTitle": "Pay invoice",
                "actionDescription": "Invoice #42",
                "deadline": "2026-10-30",
            }
        }
        extraction = normalize(raw).action_extraction
        assert extraction.has_action is True
        assert len(extraction.actions) == 1
        assert extraction.actions[0].type == ActionType.PAY
        assert extraction.actions[0].title == "Pay invoice"
        assert extraction.actions[0].deadline == "2026-10-30"
        assert extraction.primary_action_index == 0

    def test_has_action_defaults_from_list(self) -> None:
        raw = {"action_extraction": {"actions": [{"title": "Do it"}]}}
        assert normalize(raw).action_extraction.has_action is True


class TestPurity:
    def test_same_input_same_output(self) -> None:
        assert normalize(LEGACY_ROW) == normalize(LEGACY_ROW)

    def test_input_is_not_mutated(self) -> None:
        before = copy.deepcopy(LEGACY_ROW)
        normalize(LEGACY_ROW)
        assert LEGACY_ROW == before

    def test_to_raw_row_renormalizes_to_same_record(self) -> None:
        normalizer = ResultNormalizer()
        analysis = normalizer.normalize(LEGACY_ROW)
        assert normalizer.normalize(normalizer.to_raw_row(analysis)) == analysis

    def test_to_raw_row_skips_absent_slots(self) -> None:
        analysis = EmailAnalysis(
            email_id="e-1",
            categorization=Categorization(category="work", reply_worthiness=ReplyWorthiness.NO_REPLY),
            analyzed_at=datetime(2026, 10, 18, tzinfo=UTC),
        )
        row = ResultNormalizer().to_raw_row(analysis)
        assert row["categorization"]["reply_worthiness"] == "no_reply"
        assert "kind" not in row["categorization"]
        assert "action_extraction" not in row

    def test_unknown_slot_raises_key_error(self) -> None:
        with pytest.raises(KeyError):
            ResultNormalizer().normalize_slot("horoscope", {})
