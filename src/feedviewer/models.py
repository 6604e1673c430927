"""Data models for Feed Viewer."""

from dataclasses import dataclass, field
from datetime import datetime

# Fields enrichment jobs may write. Everything else belongs to the producer
# (display fields) or the read tracker (``read``).
DERIVED_FIELDS = ("summary", "cached_body", "unavailable")


@dataclass
class Item:
    """Represents a single entry from the feed."""

    id: str
    title: str | None = None
    source_url: str | None = None
    preview: str | None = None
    published_at: datetime | None = None
    read: bool = False
    summary: str | None = None
    cached_body: str | None = None
    unavailable: bool = False
    fetched_at: datetime = field(default_factory=datetime.utcnow)
