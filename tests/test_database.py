"""Tests for the SQLite item store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_item
from feedviewer.database import Database, StorageError
from feedviewer.models import Item

MOSCOW = timezone(timedelta(hours=3))


class TestInsertIfAbsent:
    def test_inserts_new_item(self, db):
        assert db.insert_if_absent(make_item("A")) is True
        stored = db.get_by_id("A")
        assert stored is not None
        assert stored.title == "Article A"
        assert stored.read is False

    def test_duplicate_is_noop(self, db):
        db.insert_if_absent(make_item("A", title="Original"))
        assert db.insert_if_absent(make_item("A", title="Changed")) is False
        assert db.get_by_id("A").title == "Original"

    def test_duplicate_keeps_read_state_and_derived_fields(self, db):
        db.insert_if_absent(make_item("A"))
        db.patch_derived("A", summary="short", unavailable=True)
        db.mark_read(["A"])

        db.insert_if_absent(make_item("A", summary=None))

        stored = db.get_by_id("A")
        assert stored.read is True
        assert stored.summary == "short"
        assert stored.unavailable is True

    def test_optional_fields_may_be_absent(self, db):
        assert db.insert_if_absent(Item(id="bare")) is True
        stored = db.get_by_id("bare")
        assert stored.title is None
        assert stored.published_at is None

    def test_add_items_counts_only_new(self, db):
        db.add_items([make_item("A"), make_item("B")])
        inserted = db.add_items([make_item("B"), make_item("C")])
        assert inserted == 1


class TestListUnread:
    def test_orders_by_publication_date(self, db):
        db.add_items([make_item("late", 30), make_item("early", 10), make_item("mid", 20)])
        assert [i.id for i in db.list_unread(10)] == ["early", "mid", "late"]

    def test_ties_broken_by_id(self, db):
        db.add_items([make_item("b", 5), make_item("c", 5), make_item("a", 5)])
        assert [i.id for i in db.list_unread(10)] == ["a", "b", "c"]

    def test_respects_limit(self, seeded_db):
        assert [i.id for i in seeded_db.list_unread(2)] == ["A", "B"]

    def test_short_result_when_exhausted(self, seeded_db):
        seeded_db.mark_read(["A", "B", "C"])
        assert [i.id for i in seeded_db.list_unread(5)] == ["D", "E"]

    def test_empty_store(self, db):
        assert db.list_unread(10) == []

    def test_skips_read_items(self, seeded_db):
        seeded_db.mark_read(["B"])
        assert [i.id for i in seeded_db.list_unread(3)] == ["A", "C", "D"]

    def test_orders_mixed_utc_offsets_by_instant(self, db):
        db.add_items([
            Item(id="late", published_at=datetime(2026, 2, 13, 8, 0, tzinfo=timezone.utc)),
            Item(id="early", published_at=datetime(2026, 2, 13, 10, 0, tzinfo=MOSCOW)),
            Item(id="naive", published_at=datetime(2026, 2, 13, 7, 30)),
        ])
        assert [i.id for i in db.list_unread(10)] == ["early", "naive", "late"]

    def test_aware_dates_read_back_as_utc(self, db):
        db.insert_if_absent(
            Item(id="A", published_at=datetime(2026, 2, 13, 10, 0, tzinfo=MOSCOW))
        )
        assert db.get_by_id("A").published_at == datetime(2026, 2, 13, 7, 0)

    def test_rejects_non_positive_limit(self, db):
        with pytest.raises(ValueError):
            db.list_unread(0)


class TestMarkRead:
    def test_marks_given_ids(self, seeded_db):
        assert seeded_db.mark_read(["A", "C"]) == 2
        assert seeded_db.status_of(["A", "B", "C"]) == {"A": True, "B": False, "C": True}

    def test_idempotent(self, seeded_db):
        seeded_db.mark_read(["A"])
        assert seeded_db.mark_read(["A"]) == 0
        assert seeded_db.get_by_id("A").read is True

    def test_unknown_ids_are_skipped(self, seeded_db):
        assert seeded_db.mark_read(["A", "missing"]) == 1

    def test_empty_input(self, seeded_db):
        assert seeded_db.mark_read([]) == 0
        assert seeded_db.count_unread() == 5

    def test_large_batch(self, db):
        ids = [f"item-{n:04d}" for n in range(1200)]
        db.add_items([make_item(i) for i in ids])
        assert db.mark_read(ids) == 1200
        assert db.count_unread() == 0


class TestGetById:
    def test_not_found_returns_none(self, db):
        assert db.get_by_id("nope") is None

    def test_round_trips_published_at(self, db):
        item = make_item("A", 42)
        db.insert_if_absent(item)
        assert db.get_by_id("A").published_at == item.published_at


class TestPatchDerived:
    def test_updates_derived_fields(self, seeded_db):
        assert seeded_db.patch_derived("A", summary="sum", cached_body="<html/>") is True
        stored = seeded_db.get_by_id("A")
        assert stored.summary == "sum"
        assert stored.cached_body == "<html/>"
        assert stored.read is False

    def test_missing_item(self, db):
        assert db.patch_derived("nope", unavailable=True) is False

    def test_refuses_read_flag(self, seeded_db):
        with pytest.raises(ValueError):
            seeded_db.patch_derived("A", read=True)
        assert seeded_db.get_by_id("A").read is False

    def test_refuses_display_fields(self, seeded_db):
        with pytest.raises(ValueError):
            seeded_db.patch_derived("A", title="new title")

    def test_does_not_touch_read_state(self, seeded_db):
        seeded_db.mark_read(["A"])
        seeded_db.patch_derived("A", unavailable=True)
        assert seeded_db.get_by_id("A").read is True


class TestEnrichmentQueries:
    def test_needing_summary(self, db):
        db.add_items([
            make_item("A", 1),
            make_item("B", 2, summary="done"),
            make_item("C", 3, source_url=None),
            make_item("D", 4),
        ])
        db.mark_read(["D"])
        assert [i.id for i in db.list_needing_summary(5)] == ["A"]

    def test_unread_with_link(self, db):
        db.add_items([make_item("A", 1), make_item("B", 2, source_url=None), make_item("C", 3)])
        db.mark_read(["C"])
        assert [i.id for i in db.list_unread_with_link()] == ["A"]


class TestStorageErrors:
    def test_connect_failure_is_storage_error(self, tmp_path):
        db = Database(str(tmp_path / "missing-dir" / "items.db"))
        with pytest.raises(StorageError):
            db.connect()

    def test_operation_failure_is_storage_error(self, db):
        db.conn.execute("DROP TABLE items")
        with pytest.raises(StorageError):
            db.list_unread(5)

    def test_not_connected(self, tmp_db_path):
        with pytest.raises(RuntimeError):
            Database(tmp_db_path).list_unread(5)

    def test_storage_error_chains_sqlite_error(self, db):
        db.conn.execute("DROP TABLE items")
        with pytest.raises(StorageError) as exc_info:
            db.mark_read(["A"])
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)
