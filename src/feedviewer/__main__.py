"""Entry point for Feed Viewer: python -m feedviewer"""

import argparse
import logging
import os
import sys

import httpx
import uvicorn

from feedviewer.availability import check_unread, create_client
from feedviewer.config import Settings
from feedviewer.database import Database, StorageError
from feedviewer.fetcher import fetch_once
from feedviewer.summarizer import Summarizer, SummaryJobRunning, create_llm, run_lock
from feedviewer.web import create_app

logger = logging.getLogger("feedviewer")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("langchain").setLevel(logging.WARNING)


def open_database(settings: Settings) -> Database:
    """Open the item store or exit: nothing works without it."""
    directory = os.path.dirname(settings.db_path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        db = Database(settings.db_path)
        db.connect()
    except (OSError, StorageError) as e:
        logger.error("Error opening/initializing database: %s", e)
        sys.exit(1)
    return db


def cmd_serve(settings: Settings, db: Database) -> int:
    app = create_app(db, settings)
    logger.info("Server running on http://%s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")
    return 0


def cmd_fetch(settings: Settings, db: Database) -> int:
    if not settings.feed_url:
        logger.error("FEED_URL is not set")
        return 1
    fetch_once(db, settings.feed_url, settings.healthcheck_url)
    return 0


def cmd_summarize(settings: Settings, db: Database) -> int:
    if not os.environ.get("ANTHROPIC_API_KEY"):
        logger.error("ANTHROPIC_API_KEY environment variable is required")
        return 1
    try:
        with run_lock(f"{settings.db_path}.summary.lock"), httpx.Client(
            timeout=30.0, follow_redirects=True
        ) as client:
            summarizer = Summarizer(
                db, create_llm(settings.summary_model), client, settings.body_selector
            )
            summarizer.run()
    except SummaryJobRunning as e:
        logger.info("%s, exiting.", e)
    return 0


def cmd_check(settings: Settings, db: Database) -> int:
    with create_client() as client:
        check_unread(db, client)
    return 0


def cmd_hourly(settings: Settings, db: Database) -> int:
    """Fetch, then summarize when an API key is present, then check links.

    Each step runs even when an earlier one failed.
    """
    steps = [("fetch", cmd_fetch)]
    if os.environ.get("ANTHROPIC_API_KEY"):
        steps.append(("summarize", cmd_summarize))
    else:
        logger.info("ANTHROPIC_API_KEY not set, skipping summary generation")
    steps.append(("check", cmd_check))

    status = 0
    for name, step in steps:
        try:
            status = step(settings, db) or status
        except Exception as e:
            logger.error("Hourly step '%s' failed: %s", name, e)
            status = 1
    return status


COMMANDS = {
    "serve": cmd_serve,
    "fetch": cmd_fetch,
    "summarize": cmd_summarize,
    "check": cmd_check,
    "hourly": cmd_hourly,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedviewer",
        description="Read a feed one batch at a time without seeing anything twice",
    )
    parser.add_argument("command", choices=sorted(COMMANDS), help="What to run")
    parser.add_argument("-d", "--db", help="Path of the SQLite database")
    parser.add_argument("-u", "--url", help="Feed URL to fetch")
    parser.add_argument("-p", "--port", type=int, help="Port for the web server")
    parser.add_argument(
        "-i", "--interval", type=int,
        help="Seconds between background fetches while serving (0 disables)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    if args.db:
        settings.db_path = args.db
    if args.url:
        settings.feed_url = args.url
    if args.port:
        settings.port = args.port
    if args.interval is not None:
        settings.poll_interval = args.interval

    db = open_database(settings)
    try:
        return COMMANDS[args.command](settings, db)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
