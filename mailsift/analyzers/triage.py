"""Triage analyzers: categorization, action extraction and client tagging."""

from mailsift.analyzers.base import AnalyzerConfig, BaseAnalyzer
from mailsift.models.email import EmailRecord, UserContext

CATEGORIES = (
    "newsletters_creator",
    "newsletters_industry",
    "news_politics",
    "product_updates",
    "local",
    "shopping",
    "travel",
    "finance",
    "family",
    "clients",
    "work",
    "personal_friends_family",
    "notifications",
)

_SYSTEM = (
    "You are an email triage assistant for a busy professional. "
    "Return only a JSON object with exactly the fields requested."
)


class Categorizer(BaseAnalyzer):
    """Life-bucket category, signal strength, reply worthiness and a quick action."""

    name = "categorizer"
    slot = "categorization"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.2, max_tokens=600)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "Categorize this email.\n"
            f"category: one of {', '.join(CATEGORIES)}\n"
            "labels: short secondary labels (e.g. needs_reply, has_deadline, from_vip)\n"
            "signal_strength: high | medium | low | noise\n"
            "reply_worthiness: must_reply | should_reply | optional_reply | no_reply\n"
            "quick_action: respond | review | archive | save | calendar | unsubscribe | follow_up | none\n"
            "summary: one sentence, written as an assistant briefing the user\n"
            "topics: up to 5 topic keywords\n"
            "reasoning: why this category\n"
            "confidence: 0 to 1"
        )


class ActionExtractor(BaseAnalyzer):
    """Everything the recipient is asked to do, ranked by priority."""

    name = "action_extractor"
    slot = "action_extraction"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.2, max_tokens=800)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "List the actions this email asks of the user. Skip marketing calls to action.\n"
            "has_action: boolean\n"
            "actions: list of {type (respond | review | create | schedule | decide | pay | submit | "
            "register | book | none), title, description, deadline (ISO date or null), "
            "priority (1 = most urgent), estimated_minutes, source_line, confidence}\n"
            "primary_action_index: index of the most important action in actions\n"
            "urgency_score: 1 to 10\n"
            "confidence: 0 to 1"
        )


class ClientTagger(BaseAnalyzer):
    """Matches the email to one of the user's clients."""

    name = "client_tagger"
    slot = "client_tagging"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.1, max_tokens=400)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "Decide whether this email concerns one of the user's clients listed below.\n"
            "client_match: boolean\n"
            "client_id: the matching client's id, or null\n"
            "client_name: the matching client's name, or null\n"
            "project_name: project mentioned, or null\n"
            "match_confidence: 0 to 1\n"
            "new_client_suggestion: a likely new client's name, or null\n"
            "relationship_signal: positive | neutral | negative | unknown"
        )
