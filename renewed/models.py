"""Domain and API models for the guidebook service."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CacheConfig(BaseModel):
    """Limits of the in-memory cache in front of the content backend."""

    max_size: int = Field(50, ge=1, description="Maximum number of cached entries")
    default_ttl_sec: float = Field(300.0, ge=0, description="Fallback entry lifetime in seconds")
    sweep_interval_sec: float = Field(
        300.0, gt=0, description="Interval of the periodic expired-entry sweep"
    )


class StorageConfig(BaseModel):
    """Object storage bucket and signed URL lifetime."""

    bucket: str = Field("book-assets", min_length=1)
    signed_url_ttl_sec: int = Field(3600, ge=60, description="Lifetime of signed URLs")


class RoutesConfig(BaseModel):
    """Path sets consulted by the route guard."""

    protected: List[str] = Field(default_factory=list)
    public: List[str] = Field(default_factory=list)
    dev: List[str] = Field(default_factory=list, description="Prefixes of development pages")
    login_path: str = Field("/login")

    @field_validator("protected", "public")
    @classmethod
    def _check_paths(cls, value: List[str]) -> List[str]:
        for path in value:
            if not path.startswith("/"):
                raise ValueError(f"route must start with '/': {path!r}")
        return value


class AppConfig(BaseModel):
    """Whole application configuration."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    routes: RoutesConfig = Field(default_factory=RoutesConfig)


class SectionSummary(BaseModel):
    id: str
    title: str
    slug: str
    order: int


class Section(SectionSummary):
    """A guidebook section as stored in the backend."""

    description: Optional[str] = None
    audio_file_path: Optional[str] = None
    text_file_path: Optional[str] = None


class SectionDetail(Section):
    """Section enriched with a signed audio URL and its text body."""

    audio_url: Optional[str] = Field(None, description="Signed URL of the narration")
    text_content: str = Field("", description="Raw markdown text of the section")


class AudioTrack(BaseModel):
    id: str
    title: str
    slug: str
    order: int
    audio_url: str


class ChartVisual(BaseModel):
    src: str
    alt: str
    file_path: str


class ContentEngineItem(BaseModel):
    """Row of the ``content_engine`` table; unknown columns are passed through."""

    model_config = ConfigDict(extra="allow")

    id: Optional[Any] = None
    section: Optional[str] = None
    principle_number: Optional[int] = None
    order_index: Optional[int] = None


class Mindset(str, Enum):
    NATURAL = "Natural"
    TRANSITION = "Transition"
    SPIRITUAL = "Spiritual"


class JournalEntry(BaseModel):
    id: str
    title: str
    content: str
    tags: List[str] = Field(default_factory=list)
    reflection_type: Optional[str] = None
    mindset: Optional[Mindset] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class JournalEntryCreate(BaseModel):
    """Payload of a new journal entry; blank fields are rejected by the service."""

    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    content: Optional[str] = None
    tags: Optional[List[Any]] = None
    reflection_type: Optional[str] = None
    mindset: Optional[str] = None


class JournalEntryUpdate(JournalEntryCreate):
    """Partial update; only fields present in the request are applied."""


class Pagination(BaseModel):
    page: int
    limit: int
    has_more: bool


class JournalEntryList(BaseModel):
    entries: List[JournalEntry]
    pagination: Pagination


class JournalStats(BaseModel):
    total_entries: int = 0
    entries_this_week: int = 0
    entries_this_month: int = 0
    average_content_length: int = 0
    mindset_counts: Dict[str, int] = Field(default_factory=dict)
    first_entry: Optional[str] = None
    latest_entry: Optional[str] = None


class AuthenticatedUser(BaseModel):
    """Principal resolved from the caller's access token."""

    id: str
    email: Optional[str] = None
    access_token: str = Field(..., repr=False)


class HealthStatus(BaseModel):
    status: str = "ok"
    backend: str = "unconfigured"
