"""Canonical analysis models.

Each analyzer produces one payload type below. Payloads are the canonical,
current-naming shape; tolerance for legacy field names lives only in
``mailsift.services.normalizer``.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field

ANALYZER_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


class SignalStrength(str, Enum):
    """Coarse importance assigned by the categorizer."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NOISE = "noise"


class ReplyWorthiness(str, Enum):
    """How much the email calls for a reply."""

    MUST_REPLY = "must_reply"
    SHOULD_REPLY = "should_reply"
    OPTIONAL_REPLY = "optional_reply"
    NO_REPLY = "no_reply"


class QuickAction(str, Enum):
    """One-click triage hint."""

    RESPOND = "respond"
    REVIEW = "review"
    ARCHIVE = "archive"
    SAVE = "save"
    CALENDAR = "calendar"
    UNSUBSCRIBE = "unsubscribe"
    FOLLOW_UP = "follow_up"
    NONE = "none"


class ActionType(str, Enum):
    """Kind of work an action item asks for."""

    RESPOND = "respond"
    REVIEW = "review"
    CREATE = "create"
    SCHEDULE = "schedule"
    DECIDE = "decide"
    PAY = "pay"
    SUBMIT = "submit"
    REGISTER = "register"
    BOOK = "book"
    NONE = "none"


class RelationshipSignal(str, Enum):
    """Tone of the relationship with a matched client."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    UNKNOWN = "unknown"


class LocationType(str, Enum):
    """Where an event takes place."""

    IN_PERSON = "in_person"
    VIRTUAL = "virtual"
    HYBRID = "hybrid"
    UNKNOWN = "unknown"


class EventLocality(str, Enum):
    """Event location relative to the user's metro area."""

    LOCAL = "local"
    OUT_OF_TOWN = "out_of_town"
    VIRTUAL = "virtual"


class DateType(str, Enum):
    """Kind of date found in an email."""

    DEADLINE = "deadline"
    EVENT = "event"
    APPOINTMENT = "appointment"
    PAYMENT_DUE = "payment_due"
    EXPIRATION = "expiration"
    FOLLOW_UP = "follow_up"
    BIRTHDAY = "birthday"
    ANNIVERSARY = "anniversary"
    RECURRING = "recurring"
    REMINDER = "reminder"
    OTHER = "other"


class RecurrencePattern(str, Enum):
    """Repeat cadence of a recurring date."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ContentType(str, Enum):
    """Shape of a newsletter or content email."""

    SINGLE_TOPIC = "single_topic"
    MULTI_TOPIC_DIGEST = "multi_topic_digest"
    CURATED_LINKS = "curated_links"
    PERSONAL_UPDATE = "personal_update"
    TRANSACTIONAL = "transactional"


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class Categorization(BaseModel):
    """Category, signal and reply triage for one email."""

    kind: Literal["categorization"] = "categorization"
    category: str = "unknown"
    labels: list[str] = Field(default_factory=list)
    signal_strength: SignalStrength | None = None
    reply_worthiness: ReplyWorthiness | None = None
    quick_action: QuickAction | None = None
    summary: str | None = None
    reasoning: str = ""
    topics: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class ActionItem(BaseModel):
    """One thing the recipient is asked to do."""

    type: ActionType = ActionType.NONE
    title: str | None = None
    description: str | None = None
    deadline: str | None = None
    priority: int = 0  # 1 is most urgent; 0 means unranked
    estimated_minutes: int | None = None
    source_line: str | None = None
    confidence: float = 0.0


class ActionExtraction(BaseModel):
    """Action items, with single-action summary fields mirroring the primary."""

    kind: Literal["action_extraction"] = "action_extraction"
    has_action: bool = False
    actions: list[ActionItem] = Field(default_factory=list)
    primary_action_index: int = 0
    action_type: ActionType = ActionType.NONE
    action_title: str | None = None
    action_description: str | None = None
    urgency_score: int = 0
    deadline: str | None = None
    estimated_minutes: int | None = None
    confidence: float = 0.0

    @property
    def primary_action(self) -> ActionItem | None:
        """The action the summary fields describe."""
        if not self.actions:
            return None
        if 0 <= self.primary_action_index < len(self.actions):
            return self.actions[self.primary_action_index]
        return self.actions[0]


class ClientTagging(BaseModel):
    """Match of the email against the user's clients."""

    kind: Literal["client_tagging"] = "client_tagging"
    client_match: bool = False
    client_id: str | None = None
    client_name: str | None = None
    project_name: str | None = None
    match_confidence: float = 0.0
    new_client_suggestion: str | None = None
    relationship_signal: RelationshipSignal = RelationshipSignal.UNKNOWN


class EventDetails(BaseModel):
    """Fields shared by single and multi event detection."""

    event_title: str = "Untitled Event"
    event_date: str = ""
    event_time: str | None = None
    event_end_date: str | None = None
    event_end_time: str | None = None
    location_type: LocationType = LocationType.UNKNOWN
    location: str | None = None
    registration_deadline: str | None = None
    rsvp_required: bool = False
    rsvp_url: str | None = None
    cost: str | None = None
    event_summary: str | None = None
    confidence: float = 0.0


class DetectedEvent(EventDetails):
    """One event within a multi-event email."""


class EventDetection(EventDetails):
    """The single event an email announces, if any."""

    kind: Literal["event_detection"] = "event_detection"
    has_event: bool = False
    event_locality: EventLocality | None = None
    organizer: str | None = None
    additional_details: str | None = None
    key_points: list[str] = Field(default_factory=list)
    is_key_date: bool = False
    key_date_type: str | None = None


class MultiEventDetection(BaseModel):
    """Several events listed in one email (calendars, roundups)."""

    kind: Literal["multi_event_detection"] = "multi_event_detection"
    has_multiple_events: bool = False
    event_count: int = 0
    events: list[DetectedEvent] = Field(default_factory=list)
    source_description: str | None = None
    confidence: float = 0.0


class ExtractedDateItem(BaseModel):
    """A dated item (deadline, payment, birthday...) found in the email."""

    date_type: DateType = DateType.OTHER
    date: str = ""
    time: str | None = None
    end_date: str | None = None
    end_time: str | None = None
    title: str = ""
    description: str | None = None
    source_snippet: str | None = None
    related_entity: str | None = None
    is_recurring: bool = False
    recurrence_pattern: RecurrencePattern | None = None
    confidence: float = 0.0


class DateExtraction(BaseModel):
    """All dates worth putting on a timeline."""

    kind: Literal["date_extraction"] = "date_extraction"
    has_dates: bool = False
    dates: list[ExtractedDateItem] = Field(default_factory=list)
    confidence: float = 0.0


class KeyPoint(BaseModel):
    point: str = ""
    relevance: str | None = None


class DigestLink(BaseModel):
    url: str = ""
    type: str = "other"
    title: str | None = None
    description: str | None = None
    is_main_content: bool = False


class GoldenNugget(BaseModel):
    nugget: str = ""
    type: str = "tip"


class StyleIdea(BaseModel):
    idea: str = ""
    type: str | None = None
    why_it_works: str | None = None
    confidence: float = 0.0


class ContentDigest(BaseModel):
    """Gist, key points and notable links of a content email."""

    kind: Literal["content_digest"] = "content_digest"
    gist: str = ""
    key_points: list[KeyPoint] = Field(default_factory=list)
    links: list[DigestLink] = Field(default_factory=list)
    content_type: ContentType | None = None
    topics_highlighted: list[str] = Field(default_factory=list)
    golden_nuggets: list[GoldenNugget] = Field(default_factory=list)
    email_style_ideas: list[StyleIdea] = Field(default_factory=list)
    confidence: float = 0.0


class AnalyzedLink(BaseModel):
    url: str = ""
    type: str = "other"
    title: str | None = None
    description: str | None = None
    is_main_content: bool = False
    priority: str | None = None
    topics: list[str] = Field(default_factory=list)
    save_worthy: bool = False
    expires: str | None = None
    confidence: float = 0.0


class LinkAnalysis(BaseModel):
    """Links ranked for whether they are worth saving."""

    kind: Literal["link_analysis"] = "link_analysis"
    has_links: bool = False
    links: list[AnalyzedLink] = Field(default_factory=list)
    summary: str | None = None
    confidence: float = 0.0


class IdeaSpark(BaseModel):
    idea: str = ""
    type: str | None = None
    relevance: str | None = None
    confidence: float = 0.0


class IdeaSparks(BaseModel):
    kind: Literal["idea_sparks"] = "idea_sparks"
    has_ideas: bool = False
    ideas: list[IdeaSpark] = Field(default_factory=list)
    confidence: float = 0.0


class Insight(BaseModel):
    insight: str = ""
    type: str | None = None
    topics: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class InsightExtraction(BaseModel):
    kind: Literal["insight_extraction"] = "insight_extraction"
    has_insights: bool = False
    insights: list[Insight] = Field(default_factory=list)
    confidence: float = 0.0


class NewsItem(BaseModel):
    headline: str = ""
    detail: str | None = None
    topics: list[str] = Field(default_factory=list)
    date_mentioned: str | None = None
    confidence: float = 0.0


class NewsBrief(BaseModel):
    kind: Literal["news_brief"] = "news_brief"
    has_news: bool = False
    news_items: list[NewsItem] = Field(default_factory=list)
    confidence: float = 0.0


AnalyzerPayload = Annotated[
    Categorization
    | ActionExtraction
    | ClientTagging
    | EventDetection
    | MultiEventDetection
    | DateExtraction
    | ContentDigest
    | LinkAnalysis
    | IdeaSparks
    | InsightExtraction
    | NewsBrief,
    Field(discriminator="kind"),
]

# Slot name (email_analyses column) → payload type, in pipeline order.
SLOT_MODELS: dict[str, type[BaseModel]] = {
    "categorization": Categorization,
    "action_extraction": ActionExtraction,
    "client_tagging": ClientTagging,
    "event_detection": EventDetection,
    "multi_event_detection": MultiEventDetection,
    "date_extraction": DateExtraction,
    "content_digest": ContentDigest,
    "link_analysis": LinkAnalysis,
    "idea_sparks": IdeaSparks,
    "insight_extraction": InsightExtraction,
    "news_brief": NewsBrief,
}


# ---------------------------------------------------------------------------
# Analyzer results
# ---------------------------------------------------------------------------


class AnalyzerSuccess(BaseModel):
    """A slot the analyzer filled."""

    status: Literal["success"] = "success"
    analyzer: str
    payload: AnalyzerPayload
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    processing_time_ms: int = 0

    @property
    def ok(self) -> bool:
        return True

    @property
    def confidence(self) -> float:
        return float(getattr(self.payload, "confidence", getattr(self.payload, "match_confidence", 0.0)))


class AnalyzerFailure(BaseModel):
    """A slot the analyzer could not fill. Siblings are unaffected."""

    status: Literal["failed"] = "failed"
    analyzer: str
    error_type: str
    error_message: str
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    processing_time_ms: int = 0

    @property
    def ok(self) -> bool:
        return False

    @property
    def confidence(self) -> float:
        return 0.0


AnalyzerResult = Annotated[AnalyzerSuccess | AnalyzerFailure, Field(discriminator="status")]


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


class EmailAnalysis(BaseModel):
    """Canonical per-email aggregate. One per email, replaced wholesale."""

    email_id: str
    user_id: str | None = None
    categorization: Categorization | None = None
    action_extraction: ActionExtraction | None = None
    client_tagging: ClientTagging | None = None
    event_detection: EventDetection | None = None
    multi_event_detection: MultiEventDetection | None = None
    date_extraction: DateExtraction | None = None
    content_digest: ContentDigest | None = None
    link_analysis: LinkAnalysis | None = None
    idea_sparks: IdeaSparks | None = None
    insight_extraction: InsightExtraction | None = None
    news_brief: NewsBrief | None = None
    tokens_used: int = 0
    processing_time_ms: int = 0
    analyzer_version: str = ANALYZER_VERSION
    analyzed_at: datetime | None = None

    def present_slots(self) -> list[str]:
        """Slots that carry a payload, in pipeline order."""
        return [slot for slot in SLOT_MODELS if getattr(self, slot) is not None]
