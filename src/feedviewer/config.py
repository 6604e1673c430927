"""Runtime settings for Feed Viewer, read from the environment."""

import os
from dataclasses import dataclass

DEFAULT_DB_PATH = "db/feed_items.db"
DEFAULT_BATCH_SIZE = 10
DEFAULT_POLL_INTERVAL = 3600  # hourly, 0 disables the in-process poller
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000
DEFAULT_SUMMARY_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_BODY_SELECTOR = ".article-formatted-body"


@dataclass
class Settings:
    """Settings shared by the web app and the collaborator jobs."""

    feed_url: str | None = None
    db_path: str = DEFAULT_DB_PATH
    batch_size: int = DEFAULT_BATCH_SIZE
    poll_interval: int = DEFAULT_POLL_INTERVAL
    static_dir: str | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    healthcheck_url: str | None = None
    summary_model: str = DEFAULT_SUMMARY_MODEL
    body_selector: str = DEFAULT_BODY_SELECTOR

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            feed_url=os.environ.get("FEED_URL") or None,
            db_path=os.environ.get("FEED_DB_PATH", DEFAULT_DB_PATH),
            batch_size=int(os.environ.get("FEED_BATCH_SIZE", DEFAULT_BATCH_SIZE)),
            poll_interval=int(os.environ.get("FEED_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
            static_dir=os.environ.get("FEED_STATIC_DIR") or None,
            host=os.environ.get("HOST", DEFAULT_HOST),
            port=int(os.environ.get("PORT", DEFAULT_PORT)),
            healthcheck_url=os.environ.get("HEALTHCHECK_URL") or None,
            summary_model=os.environ.get("SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL),
            body_selector=os.environ.get("SUMMARY_BODY_SELECTOR", DEFAULT_BODY_SELECTOR),
        )
