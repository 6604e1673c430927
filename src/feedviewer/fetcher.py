"""Feed fetching job: pulls the configured feed into the item store."""

import asyncio
import logging

import httpx

from feedviewer.database import Database
from feedviewer.feed_parser import FeedParseError, fetch_and_parse

logger = logging.getLogger(__name__)

HEALTHCHECK_TIMEOUT = 10.0


def fetch_once(db: Database, feed_url: str, healthcheck_url: str | None = None) -> int:
    """Fetch the feed once and store entries not seen before.

    Returns:
        Count of newly inserted items. Zero when the feed could not be read.
    """
    logger.info("Fetching feed %s", feed_url)
    try:
        parsed = fetch_and_parse(feed_url)
    except FeedParseError as e:
        logger.warning("Feed '%s' error: %s", feed_url, e)
        return 0

    for warning in parsed.warnings:
        logger.warning("Feed '%s': %s", parsed.title, warning)
    logger.info("Found %d items in feed '%s'", len(parsed.items), parsed.title)

    inserted = db.add_items(parsed.items)
    logger.info("Feed '%s': %d new items", parsed.title, inserted)

    if healthcheck_url:
        send_healthcheck(healthcheck_url)
    return inserted


def send_healthcheck(url: str, client: httpx.Client | None = None) -> bool:
    """Ping a health-check endpoint after a successful fetch."""
    try:
        if client is None:
            with httpx.Client(timeout=HEALTHCHECK_TIMEOUT) as own_client:
                response = own_client.get(url)
        else:
            response = client.get(url)
    except httpx.HTTPError as e:
        logger.warning("Error sending healthcheck ping: %s", e)
        return False

    if response.is_success:
        logger.info("Healthcheck ping sent successfully")
        return True
    logger.warning("Healthcheck ping failed: HTTP %d", response.status_code)
    return False


async def start_polling(
    db: Database,
    feed_url: str,
    interval: int,
    healthcheck_url: str | None = None,
) -> None:
    """Run the fetch loop indefinitely."""
    logger.info("Poller started (interval: %ds)", interval)

    while True:
        try:
            await asyncio.to_thread(fetch_once, db, feed_url, healthcheck_url)
        except Exception as e:
            logger.error("Poll cycle failed: %s", e)

        await asyncio.sleep(interval)
