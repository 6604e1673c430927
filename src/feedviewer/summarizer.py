"""Summary enrichment job: annotates unread items with an LLM summary.

Each item runs through a small LangGraph pipeline:

    fetch_page -> extract_body -> summarize -> save

A step that produces nothing ends the run for that item; the item keeps no
summary and is picked up again by a later job run.
"""

import logging
import os
import time
from contextlib import contextmanager
from typing import TypedDict

import httpx
from bs4 import BeautifulSoup
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langgraph.graph import END, START, StateGraph

from feedviewer.config import DEFAULT_BODY_SELECTOR, DEFAULT_SUMMARY_MODEL
from feedviewer.database import Database, StorageError
from feedviewer.models import Item

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
MIN_CONTENT_LENGTH = 100
MAX_PROMPT_CHARS = 3000
REQUEST_DELAY = 1.0

SUMMARY_PROMPT = ChatPromptTemplate.from_messages([
    (
        "human",
        'Write a short description (2-3 sentences) of the article titled "{title}":\n\n'
        "{content}...\n\nSummary:",
    ),
])


class SummaryState(TypedDict, total=False):
    """State carried through the per-item pipeline."""

    item: Item
    html: str | None
    content: str | None
    summary: str | None
    saved: bool


class SummaryJobRunning(Exception):
    """Raised when another summary run holds the lock file."""


def create_llm(model: str = DEFAULT_SUMMARY_MODEL) -> ChatAnthropic:
    """Chat model used for summaries. Reads ANTHROPIC_API_KEY from the environment."""
    return ChatAnthropic(model=model, temperature=0.3, max_tokens=200)


def extract_article_body(html: str, selector: str = DEFAULT_BODY_SELECTOR) -> str | None:
    """Pull the readable article text out of a page.

    Returns None when the selector matches nothing or the text is too short
    to be the article itself.
    """
    soup = BeautifulSoup(html, "html.parser")
    body = soup.select_one(selector)
    if body is None:
        logger.warning("No %s found in the page", selector)
        return None

    content = " ".join(body.get_text(" ").split())
    if len(content) < MIN_CONTENT_LENGTH:
        logger.warning("Article content too short, might not be the right content")
        return None
    return content


class Summarizer:
    """Runs the summary pipeline over unread items lacking a summary."""

    def __init__(
        self,
        db: Database,
        llm: BaseChatModel,
        client: httpx.Client,
        selector: str = DEFAULT_BODY_SELECTOR,
    ):
        self.db = db
        self.client = client
        self.selector = selector
        self.chain = SUMMARY_PROMPT | llm | StrOutputParser()
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(SummaryState)
        builder.add_node("fetch_page", self._fetch_page)
        builder.add_node("extract_body", self._extract_body)
        builder.add_node("summarize", self._summarize)
        builder.add_node("save", self._save)

        builder.add_edge(START, "fetch_page")
        builder.add_conditional_edges(
            "fetch_page", _continue_if("html", "extract_body"), ["extract_body", END]
        )
        builder.add_conditional_edges(
            "extract_body", _continue_if("content", "summarize"), ["summarize", END]
        )
        builder.add_conditional_edges(
            "summarize", _continue_if("summary", "save"), ["save", END]
        )
        builder.add_edge("save", END)
        return builder.compile()

    def _fetch_page(self, state: SummaryState) -> dict:
        url = state["item"].source_url
        logger.info("Fetching article: %s", url)
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            logger.error("Error fetching %s: %s", url, e)
            return {"html": None}
        if not response.is_success:
            logger.error("Failed to fetch %s: HTTP %d", url, response.status_code)
            return {"html": None}
        return {"html": response.text}

    def _extract_body(self, state: SummaryState) -> dict:
        content = extract_article_body(state["html"], self.selector)
        if content:
            logger.info("Extracted %d characters of content", len(content))
        return {"content": content}

    def _summarize(self, state: SummaryState) -> dict:
        item = state["item"]
        try:
            summary = self.chain.invoke({
                "title": item.title or "Untitled",
                "content": state["content"][:MAX_PROMPT_CHARS],
            })
        except Exception as e:
            logger.error("Error calling summary model for %s: %s", item.id, e)
            return {"summary": None}
        summary = summary.strip()
        return {"summary": summary or None}

    def _save(self, state: SummaryState) -> dict:
        item = state["item"]
        try:
            saved = self.db.patch_derived(
                item.id, summary=state["summary"], cached_body=state["html"]
            )
        except StorageError:
            saved = False
        if not saved:
            logger.error("Failed to save summary for: %s", item.title)
        return {"saved": saved}

    def summarize_item(self, item: Item) -> bool:
        """Summarize a single item. Returns True if a summary was stored."""
        if not item.source_url:
            logger.warning("Article %s has no link", item.id)
            return False
        logger.info("Processing: %s", item.title)
        result = self.graph.invoke({"item": item})
        return bool(result.get("saved"))

    def run(self, batch_size: int = BATCH_SIZE, delay: float = REQUEST_DELAY) -> tuple[int, int]:
        """Summarize items in batches until none are left.

        Items that fail are not retried within the same run.

        Returns:
            Tuple of (processed count, successful count).
        """
        processed = 0
        succeeded = 0
        failed: set[str] = set()

        while True:
            candidates = self.db.list_needing_summary(batch_size + len(failed))
            batch = [i for i in candidates if i.id not in failed][:batch_size]
            if not batch:
                logger.info("No more articles need summaries")
                break

            logger.info("Found %d articles needing summaries", len(batch))
            for item in batch:
                processed += 1
                if self.summarize_item(item):
                    succeeded += 1
                else:
                    failed.add(item.id)
                if delay:
                    time.sleep(delay)

            if len(batch) < batch_size:
                break

        logger.info(
            "Completed! Processed %d articles, %d successful summaries generated.",
            processed, succeeded,
        )
        return processed, succeeded


def _continue_if(key: str, next_node: str):
    """Route to ``next_node`` when the previous step produced ``key``."""

    def route(state: SummaryState) -> str:
        return next_node if state.get(key) else END

    return route


@contextmanager
def run_lock(path: str):
    """Hold a lock file for the duration of a summary run.

    Raises:
        SummaryJobRunning: If the lock file already exists.
    """
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        raise SummaryJobRunning(f"Already running (lock file {path} exists)")
    try:
        os.write(fd, str(int(time.time() * 1000)).encode())
    finally:
        os.close(fd)
    try:
        yield
    finally:
        try:
            os.remove(path)
        except OSError as e:
            logger.warning("Could not remove lock file %s: %s", path, e)
