"""Result normalizer.

Converts loosely-typed analyzer output, either fresh from the model or read
back from ``email_analyses``, into the canonical payload models. This module
is the only place that knows about legacy field names: every field is looked
up under its current snake_case name first, then its camelCase spelling, then
any historical alias. Missing or mistyped fields fall back to neutral values
(``False``, ``0``, empty list). Nothing here raises on bad input data.

Normalization is a pure function of its input.
"""

import json
import logging
import sys
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel

from mailsift.models.analysis import (
    ANALYZER_VERSION,
    SLOT_MODELS,
    ActionExtraction,
    ActionItem,
    ActionType,
    AnalyzedLink,
    Categorization,
    ClientTagging,
    ContentDigest,
    ContentType,
    DateExtraction,
    DateType,
    DetectedEvent,
    DigestLink,
    EmailAnalysis,
    EventDetails,
    EventDetection,
    EventLocality,
    ExtractedDateItem,
    GoldenNugget,
    IdeaSpark,
    IdeaSparks,
    Insight,
    InsightExtraction,
    KeyPoint,
    LinkAnalysis,
    LocationType,
    MultiEventDetection,
    NewsBrief,
    NewsItem,
    QuickAction,
    RecurrencePattern,
    RelationshipSignal,
    ReplyWorthiness,
    SignalStrength,
    StyleIdea,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)
D = TypeVar("D", bound=EventDetails)


# ---------------------------------------------------------------------------
# Lookup and coercion helpers
# ---------------------------------------------------------------------------


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _get(raw: Mapping[str, Any], name: str, *legacy: str) -> Any:
    """First non-null value under the current name, its camelCase form, then legacy aliases."""
    for key in (name, _camel(name), *legacy):
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return False


def _as_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    return int(round(_as_float(value)))


def _as_optional_int(value: Any) -> int | None:
    return None if value is None else _as_int(value)


def _as_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [text for text in (_as_str(v) for v in _as_list(value)) if text]


def _as_enum(value: Any, enum_cls: type[E], default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    """Slot payloads arrive as dicts, or as JSON text from some drivers."""
    if isinstance(value, Mapping):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, Mapping) else None
    return None


def _items(value: Any, text_field: str) -> list[Mapping[str, Any]]:
    """List entries as mappings; bare strings become ``{text_field: s}``."""
    out: list[Mapping[str, Any]] = []
    for item in _as_list(value):
        if isinstance(item, Mapping):
            out.append(item)
        elif isinstance(item, str) and item.strip():
            out.append({text_field: item})
    return out


def _flag(raw: Mapping[str, Any], name: str, fallback: bool) -> bool:
    value = _get(raw, name)
    return fallback if value is None else _as_bool(value)


# ---------------------------------------------------------------------------
# Per-slot normalizers
# ---------------------------------------------------------------------------


def _categorization(raw: Mapping[str, Any]) -> Categorization:
    return Categorization(
        category=_as_str(_get(raw, "category", "primary_category", "primaryCategory")) or "unknown",
        labels=_as_str_list(_get(raw, "labels")),
        signal_strength=_as_enum(_get(raw, "signal_strength"), SignalStrength, None),
        reply_worthiness=_as_enum(_get(raw, "reply_worthiness"), ReplyWorthiness, None),
        quick_action=_as_enum(_get(raw, "quick_action"), QuickAction, None),
        summary=_as_str(_get(raw, "summary")),
        reasoning=_as_str(_get(raw, "reasoning")) or "",
        topics=_as_str_list(_get(raw, "topics")),
        confidence=_as_float(_get(raw, "confidence")),
    )


def _action_item(raw: Mapping[str, Any]) -> ActionItem:
    return ActionItem(
        type=_as_enum(_get(raw, "type", "action_type", "actionType"), ActionType, ActionType.NONE),
        title=_as_str(_get(raw, "title", "action_title", "actionTitle")),
        description=_as_str(_get(raw, "description", "action_description", "actionDescription")),
        deadline=_as_str(_get(raw, "deadline", "due_date", "dueDate")),
        priority=max(_as_int(_get(raw, "priority")), 0),
        estimated_minutes=_as_optional_int(_get(raw, "estimated_minutes")),
        source_line=_as_str(_get(raw, "source_line")),
        confidence=_as_float(_get(raw, "confidence")),
    )


def _priority_key(item: ActionItem) -> int:
    return item.priority if item.priority > 0 else sys.maxsize


def _action_extraction(raw: Mapping[str, Any]) -> ActionExtraction:
    actions = [_action_item(item) for item in _items(_get(raw, "actions"), "title")]
    single_type = _as_enum(_get(raw, "action_type"), ActionType, None)
    single_title = _as_str(_get(raw, "action_title", "title"))
    single_description = _as_str(_get(raw, "action_description", "description"))
    deadline = _as_str(_get(raw, "deadline"))
    estimated_minutes = _as_optional_int(_get(raw, "estimated_minutes"))
    confidence = _as_float(_get(raw, "confidence"))
    index = _as_int(_get(raw, "primary_action_index"))

    # Older payloads carry one action in flat fields and no list.
    if not actions and (single_type not in (None, ActionType.NONE) or single_title):
        actions = [
            ActionItem(
                type=single_type or ActionType.NONE,
                title=single_title,
                description=single_description,
                deadline=deadline,
                estimated_minutes=estimated_minutes,
                confidence=confidence,
            )
        ]
        index = 0

    primary: ActionItem | None = None
    if actions:
        primary = actions[index] if 0 <= index < len(actions) else actions[0]
    ordered = sorted(actions, key=_priority_key)
    primary_index = next((i for i, item in enumerate(ordered) if item is primary), 0)

    return ActionExtraction(
        has_action=_flag(raw, "has_action", bool(ordered)),
        actions=ordered,
        primary_action_index=primary_index,
        action_type=single_type or (primary.type if primary else ActionType.NONE),
        action_title=single_title or (primary.title if primary else None),
        action_description=single_description or (primary.description if primary else None),
        urgency_score=_as_int(_get(raw, "urgency_score")),
        deadline=deadline or (primary.deadline if primary else None),
        estimated_minutes=(
            estimated_minutes if estimated_minutes is not None else (primary.estimated_minutes if primary else None)
        ),
        confidence=confidence,
    )


def _client_tagging(raw: Mapping[str, Any]) -> ClientTagging:
    return ClientTagging(
        client_match=_as_bool(_get(raw, "client_match")),
        client_id=_as_str(_get(raw, "client_id")),
        client_name=_as_str(_get(raw, "client_name")),
        project_name=_as_str(_get(raw, "project_name")),
        match_confidence=_as_float(_get(raw, "match_confidence", "confidence")),
        new_client_suggestion=_as_str(_get(raw, "new_client_suggestion")),
        relationship_signal=_as_enum(
            _get(raw, "relationship_signal"), RelationshipSignal, RelationshipSignal.UNKNOWN
        ),
    )


def _event_details(model: type[D], raw: Mapping[str, Any], **extra: Any) -> D:
    return model(
        event_title=_as_str(_get(raw, "event_title", "title")) or "Untitled Event",
        event_date=_as_str(_get(raw, "event_date", "date")) or "",
        event_time=_as_str(_get(raw, "event_time", "time")),
        event_end_date=_as_str(_get(raw, "event_end_date", "end_date")),
        event_end_time=_as_str(_get(raw, "event_end_time", "end_time")),
        location_type=_as_enum(_get(raw, "location_type"), LocationType, LocationType.UNKNOWN),
        location=_as_str(_get(raw, "location")),
        registration_deadline=_as_str(_get(raw, "registration_deadline")),
        rsvp_required=_as_bool(_get(raw, "rsvp_required")),
        rsvp_url=_as_str(_get(raw, "rsvp_url")),
        cost=_as_str(_get(raw, "cost")),
        event_summary=_as_str(_get(raw, "event_summary")),
        confidence=_as_float(_get(raw, "confidence")),
        **extra,
    )


def _event_detection(raw: Mapping[str, Any]) -> EventDetection:
    event_date = _as_str(_get(raw, "event_date", "date"))
    return _event_details(
        EventDetection,
        raw,
        has_event=_flag(raw, "has_event", bool(event_date)),
        event_locality=_as_enum(_get(raw, "event_locality"), EventLocality, None),
        organizer=_as_str(_get(raw, "organizer")),
        additional_details=_as_str(_get(raw, "additional_details")),
        key_points=_as_str_list(_get(raw, "key_points")),
        is_key_date=_as_bool(_get(raw, "is_key_date")),
        key_date_type=_as_str(_get(raw, "key_date_type")),
    )


def _multi_event_detection(raw: Mapping[str, Any]) -> MultiEventDetection:
    events = [_event_details(DetectedEvent, item) for item in _items(_get(raw, "events"), "event_title")]
    count = _get(raw, "event_count")
    return MultiEventDetection(
        has_multiple_events=_flag(raw, "has_multiple_events", len(events) > 1),
        event_count=len(events) if count is None else _as_int(count),
        events=events,
        source_description=_as_str(_get(raw, "source_description")),
        confidence=_as_float(_get(raw, "confidence")),
    )


def _date_item(raw: Mapping[str, Any]) -> ExtractedDateItem:
    return ExtractedDateItem(
        date_type=_as_enum(_get(raw, "date_type", "type"), DateType, DateType.OTHER),
        date=_as_str(_get(raw, "date")) or "",
        time=_as_str(_get(raw, "time", "event_time", "eventTime")),
        end_date=_as_str(_get(raw, "end_date")),
        end_time=_as_str(_get(raw, "end_time")),
        title=_as_str(_get(raw, "title")) or "",
        description=_as_str(_get(raw, "description")),
        source_snippet=_as_str(_get(raw, "source_snippet")),
        related_entity=_as_str(_get(raw, "related_entity")),
        is_recurring=_as_bool(_get(raw, "is_recurring")),
        recurrence_pattern=_as_enum(_get(raw, "recurrence_pattern"), RecurrencePattern, None),
        confidence=_as_float(_get(raw, "confidence")),
    )


def _date_extraction(raw: Mapping[str, Any]) -> DateExtraction:
    dates = [_date_item(item) for item in _items(_get(raw, "dates"), "title")]
    return DateExtraction(
        has_dates=_flag(raw, "has_dates", bool(dates)),
        dates=dates,
        confidence=_as_float(_get(raw, "confidence")),
    )


def _digest_link(raw: Mapping[str, Any]) -> DigestLink:
    return DigestLink(
        url=_as_str(_get(raw, "url", "href")) or "",
        type=_as_str(_get(raw, "type")) or "other",
        title=_as_str(_get(raw, "title")),
        description=_as_str(_get(raw, "description")),
        is_main_content=_as_bool(_get(raw, "is_main_content")),
    )


def _content_digest(raw: Mapping[str, Any]) -> ContentDigest:
    return ContentDigest(
        gist=_as_str(_get(raw, "gist")) or "",
        key_points=[
            KeyPoint(point=_as_str(_get(p, "point", "text")) or "", relevance=_as_str(_get(p, "relevance")))
            for p in _items(_get(raw, "key_points"), "point")
        ],
        links=[_digest_link(link) for link in _items(_get(raw, "links"), "url")],
        content_type=_as_enum(_get(raw, "content_type"), ContentType, None),
        topics_highlighted=_as_str_list(_get(raw, "topics_highlighted")),
        golden_nuggets=[
            GoldenNugget(nugget=_as_str(_get(n, "nugget", "text")) or "", type=_as_str(_get(n, "type")) or "tip")
            for n in _items(_get(raw, "golden_nuggets"), "nugget")
        ],
        email_style_ideas=[
            StyleIdea(
                idea=_as_str(_get(i, "idea")) or "",
                type=_as_str(_get(i, "type")),
                why_it_works=_as_str(_get(i, "why_it_works")),
                confidence=_as_float(_get(i, "confidence")),
            )
            for i in _items(_get(raw, "email_style_ideas"), "idea")
        ],
        confidence=_as_float(_get(raw, "confidence")),
    )


def _link_analysis(raw: Mapping[str, Any]) -> LinkAnalysis:
    links = [
        AnalyzedLink(
            url=_as_str(_get(link, "url", "href")) or "",
            type=_as_str(_get(link, "type")) or "other",
            title=_as_str(_get(link, "title")),
            description=_as_str(_get(link, "description")),
            is_main_content=_as_bool(_get(link, "is_main_content")),
            priority=_as_str(_get(link, "priority")),
            topics=_as_str_list(_get(link, "topics")),
            save_worthy=_as_bool(_get(link, "save_worthy")),
            expires=_as_str(_get(link, "expires")),
            confidence=_as_float(_get(link, "confidence")),
        )
        for link in _items(_get(raw, "links"), "url")
    ]
    return LinkAnalysis(
        has_links=_flag(raw, "has_links", bool(links)),
        links=links,
        summary=_as_str(_get(raw, "summary")),
        confidence=_as_float(_get(raw, "confidence")),
    )


def _idea_sparks(raw: Mapping[str, Any]) -> IdeaSparks:
    ideas = [
        IdeaSpark(
            idea=_as_str(_get(i, "idea", "text")) or "",
            type=_as_str(_get(i, "type")),
            relevance=_as_str(_get(i, "relevance")),
            confidence=_as_float(_get(i, "confidence")),
        )
        for i in _items(_get(raw, "ideas"), "idea")
    ]
    return IdeaSparks(
        has_ideas=_flag(raw, "has_ideas", bool(ideas)),
        ideas=ideas,
        confidence=_as_float(_get(raw, "confidence")),
    )


def _insight_extraction(raw: Mapping[str, Any]) -> InsightExtraction:
    insights = [
        Insight(
            insight=_as_str(_get(i, "insight", "text")) or "",
            type=_as_str(_get(i, "type")),
            topics=_as_str_list(_get(i, "topics")),
            confidence=_as_float(_get(i, "confidence")),
        )
        for i in _items(_get(raw, "insights"), "insight")
    ]
    return InsightExtraction(
        has_insights=_flag(raw, "has_insights", bool(insights)),
        insights=insights,
        confidence=_as_float(_get(raw, "confidence")),
    )


def _news_brief(raw: Mapping[str, Any]) -> NewsBrief:
    items = [
        NewsItem(
            headline=_as_str(_get(n, "headline", "title")) or "",
            detail=_as_str(_get(n, "detail", "summary")),
            topics=_as_str_list(_get(n, "topics")),
            date_mentioned=_as_str(_get(n, "date_mentioned")),
            confidence=_as_float(_get(n, "confidence")),
        )
        for n in _items(_get(raw, "news_items", "items"), "headline")
    ]
    return NewsBrief(
        has_news=_flag(raw, "has_news", bool(items)),
        news_items=items,
        confidence=_as_float(_get(raw, "confidence")),
    )


_SLOT_NORMALIZERS: dict[str, Callable[[Mapping[str, Any]], BaseModel]] = {
    "categorization": _categorization,
    "action_extraction": _action_extraction,
    "client_tagging": _client_tagging,
    "event_detection": _event_detection,
    "multi_event_detection": _multi_event_detection,
    "date_extraction": _date_extraction,
    "content_digest": _content_digest,
    "link_analysis": _link_analysis,
    "idea_sparks": _idea_sparks,
    "insight_extraction": _insight_extraction,
    "news_brief": _news_brief,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ResultNormalizer:
    """Maps raw analyzer payloads and stored analysis rows to canonical models."""

    slots: tuple[str, ...] = tuple(_SLOT_NORMALIZERS)

    def normalize_slot(self, slot: str, raw: Mapping[str, Any]) -> BaseModel:
        """Normalize one analyzer's raw payload.

        Raises:
            KeyError: If ``slot`` is not a known analyzer slot.
        """
        return _SLOT_NORMALIZERS[slot](raw)

    def normalize(self, raw_row: Mapping[str, Any]) -> EmailAnalysis:
        """Normalize a stored ``email_analyses`` row.

        Slots absent from the row are omitted (left as None), not defaulted.
        """
        slots: dict[str, BaseModel] = {}
        for slot, normalize_slot in _SLOT_NORMALIZERS.items():
            payload = _as_mapping(_get(raw_row, slot))
            if payload is not None:
                slots[slot] = normalize_slot(payload)

        return EmailAnalysis(
            email_id=_as_str(_get(raw_row, "email_id")) or "",
            user_id=_as_str(_get(raw_row, "user_id")),
            tokens_used=_as_int(_get(raw_row, "tokens_used", "total_tokens_used", "totalTokensUsed")),
            processing_time_ms=_as_int(_get(raw_row, "processing_time_ms", "total_processing_time_ms")),
            analyzer_version=_as_str(_get(raw_row, "analyzer_version")) or ANALYZER_VERSION,
            analyzed_at=_as_datetime(_get(raw_row, "analyzed_at", "created_at", "createdAt")),
            **slots,
        )

    def to_raw_row(self, analysis: EmailAnalysis) -> dict[str, Any]:
        """Serialize an analysis in current naming for the ``email_analyses`` upsert."""
        row: dict[str, Any] = {
            "email_id": analysis.email_id,
            "user_id": analysis.user_id,
            "tokens_used": analysis.tokens_used,
            "processing_time_ms": analysis.processing_time_ms,
            "analyzer_version": analysis.analyzer_version,
            "analyzed_at": analysis.analyzed_at.isoformat() if analysis.analyzed_at else None,
        }
        for slot in SLOT_MODELS:
            payload = getattr(analysis, slot)
            if payload is not None:
                row[slot] = payload.model_dump(mode="json", exclude={"kind"})
        return row


_normalizer = ResultNormalizer()


def normalize(raw_row: Mapping[str, Any]) -> EmailAnalysis:
    """Module-level shortcut for ``ResultNormalizer().normalize``."""
    return _normalizer.normalize(raw_row)
