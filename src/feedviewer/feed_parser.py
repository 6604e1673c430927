"""RSS/Atom feed parsing using feedparser."""

from dataclasses import dataclass
from datetime import datetime
from time import mktime, struct_time
from urllib.parse import urlparse

import feedparser

from feedviewer.models import Item


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom feed."""

    title: str
    items: list[Item]
    warnings: list[str]


class FeedParseError(Exception):
    """Raised when a feed cannot be parsed."""


def fetch_and_parse(url: str) -> ParsedFeed:
    """Fetch and parse an RSS or Atom feed from a URL.

    Raises:
        FeedParseError: If the URL is invalid, unreachable, or not a valid feed.
    """
    _validate_url(url)

    parsed = feedparser.parse(url)

    if parsed.get("status", 200) in (401, 403):
        raise FeedParseError(
            "Feed requires authentication. Ensure the URL is publicly accessible."
        )

    if parsed.get("status", 200) >= 400:
        raise FeedParseError(
            f"Could not reach URL: HTTP {parsed.get('status', 'unknown')}"
        )

    return _to_parsed_feed(parsed)


def parse_feed(content: str | bytes) -> ParsedFeed:
    """Parse an already downloaded RSS or Atom document.

    Raises:
        FeedParseError: If the document is not a valid feed.
    """
    return _to_parsed_feed(feedparser.parse(content))


def _to_parsed_feed(parsed) -> ParsedFeed:
    if not parsed.feed.get("title") and not parsed.entries:
        raise FeedParseError("URL does not point to a valid RSS or Atom feed")

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(
            f"Feed has formatting issues: {parsed.bozo_exception}"
        )

    return ParsedFeed(
        title=parsed.feed.get("title", "Untitled Feed"),
        items=_extract_items(parsed.entries, warnings),
        warnings=warnings,
    )


def _validate_url(url: str) -> None:
    """Validate that the URL has a valid format."""
    try:
        result = urlparse(url)
        if not result.scheme or not result.netloc:
            raise FeedParseError("Invalid URL format")
        if result.scheme not in ("http", "https"):
            raise FeedParseError("Invalid URL format: only http and https are supported")
    except ValueError:
        raise FeedParseError("Invalid URL format")


def _extract_items(entries: list, warnings: list[str]) -> list[Item]:
    """Build Items from feedparser entries, keeping feed order."""
    items = []
    for entry in entries:
        try:
            # guid first, then the link; an entry with neither can't be tracked
            item_id = (
                entry.get("id")
                or entry.get("guid")
                or entry.get("link")
            )
            if not item_id:
                warnings.append(
                    f"Skipping entry with no identifier: {entry.get('title', 'unknown')}"
                )
                continue

            items.append(Item(
                id=item_id,
                title=entry.get("title") or None,
                source_url=entry.get("link") or None,
                preview=entry.get("summary") or entry.get("description") or None,
                published_at=_parse_date(entry),
            ))
        except Exception as e:
            warnings.append(f"Skipping malformed entry: {e}")
            continue

    return items


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry."""
    for field in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field)
        if isinstance(time_struct, struct_time):
            try:
                return datetime.fromtimestamp(mktime(time_struct))
            except (ValueError, OverflowError):
                continue
    return None
