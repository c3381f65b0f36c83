"""Tests for the SQLite match store, scan status and state table."""

from filelink_usage.interfaces import Owner
from filelink_usage.storage import LinkUsageStorage

NODE_7 = Owner("node", 7)


class TestMatchRows:
    def test_upsert_and_get(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 100.0, "public://a.pdf")
        rows = storage.get_matches(NODE_7)
        assert list(rows) == ["public://a.pdf"]
        row = rows["public://a.pdf"]
        assert row.owner_type == "node"
        assert row.owner_id == 7
        assert row.seen_at == 100.0
        assert row.managed_file_uri == "public://a.pdf"

    def test_upsert_refreshes_without_duplicating(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 100.0, "public:///a.pdf")
        storage.upsert_match(NODE_7, "public://a.pdf", 200.0)
        rows = storage.get_matches(NODE_7)
        assert storage.count_matches() == 1
        assert rows["public://a.pdf"].seen_at == 200.0
        # An unresolved refresh keeps the previously recorded file URI
        assert rows["public://a.pdf"].managed_file_uri == "public:///a.pdf"

    def test_delete(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 1.0)
        storage.upsert_match(NODE_7, "public://b.pdf", 1.0)
        assert storage.delete_match(NODE_7, "public://a.pdf") is True
        assert storage.delete_match(NODE_7, "public://a.pdf") is False
        assert list(storage.get_matches(NODE_7)) == ["public://b.pdf"]
        assert storage.delete_owner_matches(NODE_7) == 1
        assert storage.count_matches() == 0

    def test_find_owners_by_link_or_recorded_uri(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 1.0)
        storage.upsert_match(Owner("block", 2), "public://other.pdf", 1.0, "public://a.pdf")
        storage.upsert_match(Owner("node", 9), "public://b.pdf", 1.0)

        by_link = storage.find_owners_by_link("public://a.pdf")
        assert [(r.owner_type, r.owner_id) for r in by_link] == [("node", 7)]

        both = storage.find_owners_by_link("public://a.pdf", "public://a.pdf")
        assert {(r.owner_type, r.owner_id) for r in both} == {("node", 7), ("block", 2)}

    def test_owners_are_isolated(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 1.0)
        storage.upsert_match(Owner("taxonomy_term", 7), "public://a.pdf", 1.0)
        storage.delete_owner_matches(NODE_7)
        assert storage.get_matches(Owner("taxonomy_term", 7))


class TestScanStatus:
    def test_set_and_read(self, storage):
        storage.set_scanned(NODE_7, 50.0)
        storage.set_scanned(NODE_7, 60.0)
        assert storage.get_scan_time(NODE_7) == 60.0
        assert storage.get_scan_time(Owner("node", 8)) is None

    def test_scan_times_for_page(self, storage):
        for oid in range(1, 1201):
            if oid % 2 == 0:
                storage.set_scanned(Owner("node", oid), float(oid))
        times = storage.get_scan_times("node", list(range(1, 1201)))
        assert len(times) == 600
        assert times[1000] == 1000.0
        assert 999 not in times

    def test_delete_and_truncate(self, storage):
        storage.set_scanned(NODE_7, 1.0)
        storage.set_scanned(Owner("node", 8), 1.0)
        storage.delete_scan_status(NODE_7)
        assert storage.get_scan_time(NODE_7) is None
        storage.truncate_scan_status()
        assert storage.get_scan_time(Owner("node", 8)) is None


class TestState:
    def test_last_scan_marker(self, storage):
        assert storage.get_last_scan() == 0.0
        storage.set_last_scan(1234.5)
        assert storage.get_last_scan() == 1234.5

    def test_settings_round_trip_types(self, storage):
        storage.set_setting("scan_frequency", "hourly")
        storage.set_setting("verbose_logging", True)
        assert storage.get_setting("scan_frequency") == "hourly"
        assert storage.get_setting("verbose_logging") is True
        assert storage.get_setting("missing", "default") == "default"

    def test_state_survives_reopen(self, db_path):
        first = LinkUsageStorage(db_path)
        first.set_last_scan(99.0)
        first.upsert_match(NODE_7, "public://a.pdf", 1.0)
        first.close()

        second = LinkUsageStorage(db_path)
        try:
            assert second.get_last_scan() == 99.0
            assert second.count_matches() == 1
        finally:
            second.close()


class TestStats:
    def test_stats(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 1.0, "public://a.pdf")
        storage.upsert_match(NODE_7, "public://missing.pdf", 1.0)
        storage.upsert_match(Owner("block", 1), "public://a.pdf", 1.0, "public://a.pdf")
        storage.set_scanned(NODE_7, 1.0)

        stats = storage.stats()
        assert stats["total_matches"] == 3
        assert stats["matches_by_type"] == {"node": 2, "block": 1}
        assert stats["unresolved_matches"] == 1
        assert stats["owners_with_links"] == 2
        assert stats["owners_scanned"] == 1
        assert stats["last_scan"] == 0.0

    def test_truncate_matches(self, storage):
        storage.upsert_match(NODE_7, "public://a.pdf", 1.0)
        storage.truncate_matches()
        assert storage.count_matches() == 0
