"""Availability job: flags unread items whose link has gone away."""

import logging
import time

import httpx

from feedviewer.database import Database, StorageError

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; FeedViewerChecker/1.0)"
REQUEST_DELAY = 0.2
UNAVAILABLE_STATUS = 403


def check_link(client: httpx.Client, url: str) -> tuple[bool, int]:
    """HEAD the link. Returns (available, status); status 0 on network errors.

    Network errors count as available since they are usually temporary.
    """
    try:
        response = client.head(url)
    except httpx.HTTPError as e:
        logger.error("Network error checking %s: %s", url, e)
        return True, 0
    return response.status_code != UNAVAILABLE_STATUS, response.status_code


def check_unread(db: Database, client: httpx.Client, delay: float = REQUEST_DELAY) -> tuple[int, int]:
    """Check every unread item with a link and record the result.

    Returns:
        Tuple of (available count, unavailable count).
    """
    items = db.list_unread_with_link()
    if not items:
        logger.info("No unread articles to check")
        return 0, 0

    logger.info("Found %d unread articles to check", len(items))
    available_count = 0
    unavailable_count = 0

    for item in items:
        available, status = check_link(client, item.source_url)
        try:
            db.patch_derived(item.id, unavailable=not available)
        except StorageError:
            logger.error("Error updating availability for %s", item.id)

        if available:
            available_count += 1
            logger.info("[%d] Available: %s", status, (item.title or "")[:60])
        else:
            unavailable_count += 1
            logger.info("[%d] Unavailable: %s", status, (item.title or "")[:60])

        if delay:
            time.sleep(delay)

    logger.info("Completed! %d available, %d unavailable", available_count, unavailable_count)
    return available_count, unavailable_count


def create_client() -> httpx.Client:
    return httpx.Client(
        timeout=30.0,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )
