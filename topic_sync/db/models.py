"""Pydantic models for stored conversation records."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Sentiment = Literal["Positive", "Neutral", "Negative", "Unknown"]


class HarvestedRecord(BaseModel):
    """Minimal row written during harvest."""

    id: str
    created_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)


class EnrichmentPatch(BaseModel):
    """Partial update written after enrichment.

    Only the fields that were explicitly set are written, so a patch built
    without categorization results leaves the topic columns untouched.
    """

    model_config = ConfigDict(extra="forbid")

    country: Optional[str] = None
    region: Optional[str] = None
    product: Optional[str] = None
    channel: Optional[str] = None
    transcript: Optional[str] = None
    main_topics: Optional[List[str]] = None
    sub_topics: Optional[List[str]] = None
    sentiment_start: Optional[Sentiment] = None
    sentiment_end: Optional[Sentiment] = None
    resolution_outcome: Optional[str] = None
    feedbacks: Optional[List[str]] = None

    def to_columns(self) -> dict:
        """Columns to write, in declaration order."""
        return self.model_dump(exclude_unset=True)


class ConversationRecord(BaseModel):
    """A row of conversation_topics.

    Lifecycle: harvested (id + created_at), enriched (transcript and
    metadata), categorized (topic lists not NULL). An empty topic list
    means the conversation was analyzed and nothing matched.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    country: Optional[str] = None
    region: Optional[str] = None
    product: Optional[str] = None
    channel: Optional[str] = None
    transcript: Optional[str] = None
    main_topics: Optional[List[str]] = None
    sub_topics: Optional[List[str]] = None
    sentiment_start: Optional[Sentiment] = None
    sentiment_end: Optional[Sentiment] = None
    resolution_outcome: Optional[str] = None
    feedbacks: Optional[List[str]] = None
    synced_at: Optional[datetime] = None

    @property
    def is_enriched(self) -> bool:
        return self.transcript is not None

    @property
    def is_categorized(self) -> bool:
        return self.main_topics is not None


class SyncRunSummary(BaseModel):
    """Outcome of a sync, enrich-missing or analyze-only run."""

    mode: Literal["sync", "enrich_missing", "analyze_only"] = "sync"
    status: Literal["running", "completed", "stopped", "failed"] = "running"
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    # Phase 1
    harvested: int = 0
    inserted: int = 0

    # Phase 2 / analysis
    total: int = 0
    processed: int = 0
    enriched: int = 0
    errors: int = 0
    parse_failures: int = 0
    rate_limit_retries: int = 0

    last_error: Optional[str] = None
    error_ids: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.errors == 0 and self.last_error is None
