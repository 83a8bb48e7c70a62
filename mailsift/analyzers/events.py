"""Calendar analyzers: single events, multi-event emails and dated items."""

from mailsift.analyzers.base import AnalyzerConfig, BaseAnalyzer
from mailsift.models.email import EmailRecord, UserContext

_SYSTEM = (
    "You extract calendar information from emails. Dates are ISO 8601 (YYYY-MM-DD), "
    "times are 24h HH:MM. Return only a JSON object with exactly the fields requested."
)

_EVENT_FIELDS = (
    "event_title, event_date, event_time, event_end_date, event_end_time, "
    "location_type (in_person | virtual | hybrid | unknown), location, registration_deadline, "
    "rsvp_required, rsvp_url, cost, event_summary, confidence"
)


def _reference_date(email: EmailRecord) -> str:
    return email.date.date().isoformat() if email.date else "unknown"


class EventDetector(BaseAnalyzer):
    """The one event an email announces, with logistics."""

    name = "event_detector"
    slot = "event_detection"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.1, max_tokens=800)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            f"Resolve relative dates against the email date {_reference_date(email)}.\n"
            "has_event: boolean\n"
            f"{_EVENT_FIELDS}\n"
            "event_locality: local | out_of_town | virtual, relative to the user's location\n"
            "organizer, additional_details\n"
            "key_points: up to 3 short bullets the user should know\n"
            "is_key_date: true for deadlines or open-house style dates rather than attendable events\n"
            "key_date_type: kind of key date, or null"
        )


class MultiEventDetector(BaseAnalyzer):
    """Several events listed in one email (school calendars, event roundups)."""

    name = "multi_event_detector"
    slot = "multi_event_detection"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.1, max_tokens=1500)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            f"Resolve relative dates against the email date {_reference_date(email)}.\n"
            "has_multiple_events: boolean\n"
            "event_count: number of events\n"
            f"events: list of {{{_EVENT_FIELDS}}}, at most 10\n"
            "source_description: what kind of listing this is\n"
            "confidence: 0 to 1"
        )


class DateExtractor(BaseAnalyzer):
    """Deadlines, payments, birthdays and other dates for the timeline."""

    name = "date_extractor"
    slot = "date_extraction"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.1, max_tokens=1000)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            f"Resolve relative dates against the email date {_reference_date(email)}.\n"
            "has_dates: boolean\n"
            "dates: list of {date_type (deadline | event | appointment | payment_due | expiration | "
            "follow_up | birthday | anniversary | recurring | reminder | other), date, time, end_date, "
            "end_time, title, description, source_snippet, related_entity, is_recurring, "
            "recurrence_pattern (daily | weekly | monthly | quarterly | yearly | null), confidence}\n"
            "confidence: 0 to 1"
        )
