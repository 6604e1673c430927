"""Deferred read-tracking for paginated reading sessions.

Items handed to a reader are not marked read when they are served. A page
is committed only when the same session asks for the next page (by then
the reader has finished with it) or confirms it reached the end of the
feed. If the reader vanishes in between, at most one page shows up again
as unread on the next visit; nothing is lost.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

from feedviewer.database import Database, StorageError
from feedviewer.models import Item

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"


@dataclass
class Page:
    """One batch of unread items delivered to a reader."""

    items: list[Item]
    offset: int
    limit: int

    @property
    def exhausted(self) -> bool:
        """A short page tells the reader there is nothing left after it."""
        return len(self.items) < self.limit

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(item.id for item in self.items)


@dataclass
class ReadCursor:
    """Ids delivered to one session and not yet committed as read."""

    pending: tuple[str, ...] = ()
    retired: bool = False
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)


class BatchTracker:
    """Commits each delivered page as read once the reader moves past it.

    Sessions are keyed by an opaque string (a cookie value at the HTTP
    layer). Calls for the same session run one at a time; calls for
    different sessions do not block each other except inside the store.
    A session is only tracked while it holds a pending page, so unknown or
    abandoned keys cost nothing once their cursor is empty.
    """

    def __init__(self, db: Database):
        self.db = db
        self._cursors: dict[str, ReadCursor] = {}
        self._registry_lock = Lock()

    @contextmanager
    def _locked(self, session: str, create: bool = False) -> Iterator[ReadCursor | None]:
        """Hold the cursor lock of ``session``; yields None for an untracked one.

        A cursor left empty when the block exits is dropped from the
        registry and marked retired, so a caller that was waiting on its
        lock looks the session up again.
        """
        while True:
            with self._registry_lock:
                cursor = self._cursors.get(session)
                if cursor is None and create:
                    cursor = self._cursors[session] = ReadCursor()
            if cursor is None:
                yield None
                return
            with cursor.lock:
                if cursor.retired:
                    continue
                try:
                    yield cursor
                finally:
                    if not cursor.pending:
                        self._retire(session, cursor)
                return

    def _retire(self, session: str, cursor: ReadCursor) -> None:
        with self._registry_lock:
            if self._cursors.get(session) is cursor:
                del self._cursors[session]
        cursor.retired = True

    @property
    def active_sessions(self) -> int:
        """Number of sessions holding an uncommitted page."""
        with self._registry_lock:
            return len(self._cursors)

    def request_page(
        self, offset: int, limit: int, session: str = DEFAULT_SESSION
    ) -> Page:
        """Commit the previous page of ``session`` and fetch the next one.

        ``offset`` is the reader's own count of items seen so far. It is
        logged but never used to skip rows: committed items drop out of the
        unread set, so "the first ``limit`` unread items" is always the next
        page.

        Raises:
            ValueError: If ``limit`` < 1 or ``offset`` < 0.
            StorageError: If the unread items cannot be listed.
        """
        if limit < 1:
            raise ValueError("limit must be a positive integer")
        if offset < 0:
            raise ValueError("offset must not be negative")

        with self._locked(session, create=True) as cursor:
            logger.info(
                "Session %s: page request offset=%d limit=%d (%d pending)",
                session, offset, limit, len(cursor.pending),
            )
            if cursor.pending:
                try:
                    self._commit(session, cursor.pending)
                    cursor.pending = ()
                except StorageError as e:
                    # The pending ids stay unread and are re-served or
                    # re-committed on the next request.
                    logger.warning(
                        "Session %s: could not commit %d items, will retry: %s",
                        session, len(cursor.pending), e,
                    )

            items = self.db.list_unread(limit)
            cursor.pending = tuple(item.id for item in items)

        page = Page(items=items, offset=offset, limit=limit)
        logger.info(
            "Session %s: delivering %d items%s",
            session, len(items), " (end of feed)" if page.exhausted else "",
        )
        return page

    def commit_final(self, session: str = DEFAULT_SESSION) -> int:
        """Commit the last delivered page of ``session`` and clear its cursor.

        Safe to call repeatedly; a session with nothing pending is a no-op.

        Returns:
            Number of items that changed to read.
        """
        with self._locked(session) as cursor:
            if cursor is None or not cursor.pending:
                logger.info("Session %s: no pending batch to commit", session)
                return 0
            marked = self._commit(session, cursor.pending)
            cursor.pending = ()
        return marked

    def reset(self, session: str = DEFAULT_SESSION) -> int:
        """Forget the pending page of ``session`` without committing it.

        Used on a fresh load of the reading page: the batch delivered before
        the reload may never have been rendered.

        Returns:
            Number of ids discarded.
        """
        discarded = 0
        with self._locked(session) as cursor:
            if cursor is not None:
                discarded = len(cursor.pending)
                cursor.pending = ()
        logger.info("Session %s: reset, discarded %d pending ids", session, discarded)
        return discarded

    def pending(self, session: str = DEFAULT_SESSION) -> tuple[str, ...]:
        """Ids delivered to ``session`` and awaiting commit."""
        with self._locked(session) as cursor:
            return cursor.pending if cursor is not None else ()

    def _commit(self, session: str, ids: tuple[str, ...]) -> int:
        marked = self.db.mark_read(ids)
        logger.info("Session %s: marked %d of %d items read", session, marked, len(ids))
        if marked != len(ids):
            try:
                status = self.db.status_of(ids)
            except StorageError:
                logger.warning(
                    "Session %s: expected to mark %d items, marked %d",
                    session, len(ids), marked,
                )
                return marked
            already_read = [i for i in ids if status.get(i)]
            missing = [i for i in ids if i not in status]
            logger.warning(
                "Session %s: expected to mark %d items, marked %d "
                "(already read: %s; missing: %s)",
                session, len(ids), marked, already_read or "none", missing or "none",
            )
        return marked
