"""Shared test fixtures for Feed Viewer tests."""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from feedviewer.database import Database
from feedviewer.models import Item


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>&lt;img src="https://example.com/1.png"&gt; Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Link Only</title>
      <link>https://example.com/article-3</link>
    </item>
    <item>
      <title>No Identifier</title>
      <description>Neither guid nor link</description>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

BASE_TIME = datetime(2026, 2, 13, 8, 0, 0)


def make_item(item_id: str, minutes: int = 0, **kwargs) -> Item:
    """Item published ``minutes`` after a fixed base time."""
    kwargs.setdefault("title", f"Article {item_id}")
    kwargs.setdefault("source_url", f"https://example.com/{item_id}")
    return Item(
        id=item_id,
        published_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """A connected, empty item store."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def seeded_db(db):
    """Store holding unread items A, B, C, D, E in publication order."""
    db.add_items([make_item(name, minutes=i) for i, name in enumerate("ABCDE")])
    return db


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
