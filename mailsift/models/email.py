"""Email and user context models consumed by the analysis pipeline."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EmailRecord(BaseModel):
    """A row of the ``emails`` table.

    Content fields are owned by ingestion; the pipeline only writes the
    triage fields (category through reviewed_at).
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    gmail_id: str | None = None
    thread_id: str | None = None
    subject: str | None = None
    sender_email: str = ""
    sender_name: str | None = None
    recipient_email: str | None = None
    date: datetime | None = None
    snippet: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    gmail_labels: list[str] = Field(default_factory=list)
    is_read: bool = False
    is_archived: bool = False
    is_starred: bool = False

    # Triage state
    category: str | None = None
    summary: str | None = None
    quick_action: str | None = None
    labels: list[str] = Field(default_factory=list)
    signal_strength: str | None = None
    reply_worthiness: str | None = None
    gist: str | None = None
    client_id: str | None = None
    analyzed_at: datetime | None = None
    analysis_error: str | None = None
    reviewed_at: datetime | None = None

    @property
    def is_analyzed(self) -> bool:
        """Whether a previous pass stamped this email as analyzed."""
        return self.analyzed_at is not None


class ClientRef(BaseModel):
    """An active client the user works with."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    company: str | None = None
    email: str | None = None
    priority: str | None = None


class UserContext(BaseModel):
    """Read-only personalization context handed to every analyzer."""

    user_id: str
    role: str | None = None
    company: str | None = None
    location_city: str | None = None
    location_metro: str | None = None
    timezone: str = "America/Chicago"
    priorities: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)
    vip_emails: list[str] = Field(default_factory=list)
    vip_domains: list[str] = Field(default_factory=list)
    interests: list[str] = Field(default_factory=list)
    clients: list[ClientRef] = Field(default_factory=list)
    family_context: dict[str, Any] | None = None
    onboarding_completed: bool = False

    def is_vip(self, sender_email: str) -> bool:
        """Check whether a sender matches a VIP address or domain."""
        address = sender_email.lower()
        if address in (e.lower() for e in self.vip_emails):
            return True
        domain = "@" + address.split("@")[-1] if "@" in address else ""
        return bool(domain) and any(d.lower() == domain for d in self.vip_domains)
