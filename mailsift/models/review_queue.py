"""Review queue models: request, entries and page statistics."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class ReviewQueueEntry(BaseModel):
    """Read-only projection of an analyzed email. Never persisted."""

    model_config = ConfigDict(extra="ignore")

    id: str
    subject: str | None = None
    sender_email: str = ""
    sender_name: str | None = None
    date: datetime
    snippet: str | None = None
    gist: str | None = None
    summary: str | None = None
    category: str | None = None
    signal_strength: str | None = None
    reply_worthiness: str | None = None
    quick_action: str | None = None
    labels: list[str] = Field(default_factory=list)
    is_read: bool = False
    reviewed_at: datetime | None = None
    rank: int = 0


class QueueStats(BaseModel):
    """Counts over the returned page, plus the full eligible set size."""

    total_in_queue: int = Field(0, serialization_alias="totalInQueue")
    returned_count: int = Field(0, serialization_alias="returnedCount")
    high_signal: int = Field(0, serialization_alias="highSignal")
    medium_signal: int = Field(0, serialization_alias="mediumSignal")
    needs_reply: int = Field(0, serialization_alias="needsReply")
    unread: int = 0


class ReviewQueuePage(BaseModel):
    """Queue endpoint response."""

    items: list[ReviewQueueEntry]
    stats: QueueStats
    last_updated: datetime = Field(serialization_alias="lastUpdated")


class MarkReviewedRequest(BaseModel):
    """PATCH body for marking an email reviewed."""

    model_config = ConfigDict(populate_by_name=True)

    email_id: str = Field(alias="emailId", min_length=1)


class MarkReviewedResponse(BaseModel):
    success: bool = True
    email_id: str = Field(serialization_alias="emailId")
    reviewed_at: datetime = Field(serialization_alias="reviewedAt")
