"""Content analyzers: digest, links, idea sparks, insights and news."""

from mailsift.analyzers.base import AnalyzerConfig, BaseAnalyzer
from mailsift.models.email import EmailRecord, UserContext

_SYSTEM = (
    "You read newsletters and content emails on behalf of a busy reader. "
    "Return only a JSON object with exactly the fields requested."
)


def _interests(context: UserContext) -> str:
    return ", ".join(context.interests) if context.interests else "not specified"


class ContentDigestAnalyzer(BaseAnalyzer):
    """Gist, key points and links worth clicking."""

    name = "content_digest"
    slot = "content_digest"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.3, max_tokens=1500)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "Digest this email.\n"
            "gist: one or two sentences on what it says\n"
            "key_points: list of {point, relevance}\n"
            "links: list of {url, type (article | registration | document | video | product | tool | "
            "social | unsubscribe | other), title, description, is_main_content}\n"
            "content_type: single_topic | multi_topic_digest | curated_links | personal_update | transactional\n"
            "topics_highlighted: topics that match the user's interests\n"
            "golden_nuggets: list of {nugget, type (deal | tip | quote | stat | recommendation | "
            "remember_this | sales_opportunity)}\n"
            "email_style_ideas: list of {idea, type, why_it_works, confidence}\n"
            "confidence: 0 to 1"
        )


class LinkAnalyzer(BaseAnalyzer):
    """Ranks links by whether they are worth saving."""

    name = "link_analyzer"
    slot = "link_analysis"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.2, max_tokens=1200)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            f"Assess the links in this email for a reader interested in: {_interests(context)}.\n"
            "has_links: boolean\n"
            "links: list of {url, type, title, description, is_main_content, priority "
            "(must_read | worth_reading | skip), topics, save_worthy, expires, confidence}. "
            "Leave out tracking, unsubscribe and social footer links.\n"
            "summary: one sentence\n"
            "confidence: 0 to 1"
        )


class IdeaSparkAnalyzer(BaseAnalyzer):
    """Creative ideas the email could spark for the user."""

    name = "idea_spark"
    slot = "idea_sparks"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.7, max_tokens=800)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "Suggest up to 3 concrete ideas this email could spark, tailored to the user.\n"
            "has_ideas: boolean\n"
            "ideas: list of {idea, type (social_post | networking | business | content_creation | "
            "hobby | shopping | date_night | family_activity | personal_growth | community), "
            "relevance, confidence}\n"
            "confidence: 0 to 1"
        )


class InsightExtractor(BaseAnalyzer):
    """Reusable ideas and frameworks from content emails."""

    name = "insight_extractor"
    slot = "insight_extraction"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.3, max_tokens=800)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "Extract up to 4 insights worth remembering.\n"
            "has_insights: boolean\n"
            "insights: list of {insight, type (tip | framework | observation | counterintuitive | trend), "
            "topics, confidence}\n"
            "confidence: 0 to 1"
        )


class NewsBriefAnalyzer(BaseAnalyzer):
    """Factual news items the email reports."""

    name = "news_brief"
    slot = "news_brief"
    system_prompt = _SYSTEM
    default_config = AnalyzerConfig(temperature=0.2, max_tokens=800)

    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        return (
            "List the factual news this email reports (launches, announcements, changes).\n"
            "has_news: boolean\n"
            "news_items: list of {headline, detail, topics, date_mentioned, confidence}, at most 5\n"
            "confidence: 0 to 1"
        )
