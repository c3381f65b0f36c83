"""Tests for single-owner reconciliation against the usage ledger."""

import logging

import pytest

from filelink_usage.finder import FileFinder
from filelink_usage.interfaces import Owner
from filelink_usage.reconciler import Reconciler, coerce_owner_id

from conftest import NAMESPACE, NOW

NODE_7 = Owner("node", 7)


def _usage(ledger, owner=NODE_7):
    return ledger.list_owner_usage(NAMESPACE, owner.type, owner.id)


class TestReconcile:
    def test_new_link_adds_one_usage(self, reconciler, catalog, ledger, storage):
        catalog.add_file("public://report.pdf", file_id=42)
        result = reconciler.reconcile("node", 7, {"public://report.pdf"}, now=NOW)

        assert result.added == {42}
        assert result.changed_file_ids == {42}
        assert _usage(ledger) == {42: 1}
        rows = storage.get_matches(NODE_7)
        assert rows["public://report.pdf"].managed_file_uri == "public://report.pdf"
        assert storage.get_scan_time(NODE_7) == NOW

    def test_second_run_changes_nothing(self, reconciler, catalog, ledger, storage):
        catalog.add_file("public://report.pdf", file_id=42)
        reconciler.reconcile("node", 7, {"public://report.pdf"}, now=NOW)
        result = reconciler.reconcile("node", 7, {"public://report.pdf"}, now=NOW + 10)

        assert result.changed_file_ids == set()
        assert _usage(ledger) == {42: 1}
        assert storage.count_matches() == 1
        assert storage.get_matches(NODE_7)["public://report.pdf"].seen_at == NOW + 10

    def test_removed_link_drops_usage_and_row(self, reconciler, catalog, ledger, storage):
        catalog.add_file("public://a.pdf", file_id=1)
        catalog.add_file("public://b.pdf", file_id=2)
        reconciler.reconcile("node", 7, {"public://a.pdf", "public://b.pdf"}, now=NOW)

        result = reconciler.reconcile("node", 7, {"public://b.pdf"}, now=NOW)
        assert result.removed == {1}
        assert _usage(ledger) == {2: 1}
        assert set(storage.get_matches(NODE_7)) == {"public://b.pdf"}

    def test_over_counted_usage_is_repaired(self, reconciler, catalog, ledger):
        catalog.add_file("public://a.pdf", file_id=1)
        ledger.add(1, NAMESPACE, "node", 7, count=3)

        result = reconciler.reconcile("node", 7, {"public://a.pdf"}, now=NOW)
        assert result.repaired == {1}
        assert result.added == set()
        assert _usage(ledger) == {1: 1}

    def test_usage_without_match_rows_is_removed(self, reconciler, ledger):
        ledger.add(9, NAMESPACE, "node", 7)
        result = reconciler.reconcile("node", 7, set(), now=NOW)
        assert result.removed == {9}
        assert _usage(ledger) == {}

    def test_other_namespaces_and_owners_untouched(self, reconciler, catalog, ledger):
        catalog.add_file("public://a.pdf", file_id=1)
        ledger.add(1, "editor", "node", 7)
        ledger.add(1, NAMESPACE, "node", 8)

        reconciler.reconcile("node", 7, set(), now=NOW)
        assert ledger.list_usage(1) == {
            "editor": {"node": {7: 1}},
            NAMESPACE: {"node": {8: 1}},
        }

    def test_unresolved_link_is_recorded_without_usage(self, reconciler, ledger, storage):
        result = reconciler.reconcile("node", 7, {"public://later.pdf"}, now=NOW)
        assert result.unresolved == {"public://later.pdf"}
        assert result.changed_file_ids == set()
        assert _usage(ledger) == {}
        assert storage.get_matches(NODE_7)["public://later.pdf"].managed_file_uri is None

    def test_unresolved_link_logged_at_debug_unless_verbose(self, reconciler, caplog):
        with caplog.at_level(logging.DEBUG, logger="filelink_usage.reconciler"):
            reconciler.reconcile("node", 7, {"public://later.pdf"}, now=NOW)
        assert [r.levelno for r in caplog.records] == [logging.DEBUG]

        caplog.clear()
        reconciler.verbose = True
        with caplog.at_level(logging.DEBUG, logger="filelink_usage.reconciler"):
            reconciler.reconcile("node", 8, {"public://later.pdf"}, now=NOW)
        assert [r.levelno for r in caplog.records] == [logging.INFO]

    def test_deleted_owner_cascade(self, reconciler, catalog, ledger, storage):
        catalog.add_file("public://a.pdf", file_id=1)
        catalog.add_file("public://b.pdf", file_id=2)
        links = {"public://a.pdf", "public://b.pdf", "public://missing.pdf"}
        reconciler.reconcile("node", 7, links, now=NOW)

        result = reconciler.reconcile("node", 7, links, deleted=True, now=NOW)
        assert result.removed == {1, 2}
        assert _usage(ledger) == {}
        assert storage.get_matches(NODE_7) == {}
        assert storage.get_scan_time(NODE_7) is None

    def test_string_id_is_accepted(self, reconciler, catalog, ledger):
        catalog.add_file("public://a.pdf", file_id=1)
        result = reconciler.reconcile("node", "7", {"public://a.pdf"}, now=NOW)
        assert result.owner == NODE_7
        assert _usage(ledger) == {1: 1}

    @pytest.mark.parametrize("bad_id", ["abc", "7a", "", None, 1.5, True, "²", "7²", -3])
    def test_malformed_id_is_a_noop(self, reconciler, catalog, ledger, storage, caplog, bad_id):
        catalog.add_file("public://a.pdf", file_id=1)
        with caplog.at_level(logging.WARNING):
            result = reconciler.reconcile("node", bad_id, {"public://a.pdf"}, now=NOW)
        assert result.skipped is True
        assert result.changed_file_ids == set()
        assert storage.count_matches() == 0
        assert ledger.list_usage(1) == {}
        assert "malformed id" in caplog.text


class TestSharedFile:
    """Two distinct links that resolve to the same managed file."""

    class _AliasResolver:
        def __init__(self, mapping):
            self.mapping = mapping

        def resolve_uri(self, uri):
            return self.mapping.get(uri)

        def resolve_file(self, file_id):
            return None

        def find_by_filename(self, filename):
            return []

    @pytest.fixture
    def shared(self, storage, ledger):
        resolver = self._AliasResolver({"public://a.pdf": 5, "public://copy-of-a.pdf": 5})
        return Reconciler(storage, FileFinder(resolver), ledger, namespace=NAMESPACE)

    def test_one_usage_for_two_links(self, shared, ledger):
        shared.reconcile("node", 7, {"public://a.pdf", "public://copy-of-a.pdf"}, now=NOW)
        assert _usage(ledger) == {5: 1}

    def test_removing_one_link_keeps_usage(self, shared, ledger, storage):
        shared.reconcile("node", 7, {"public://a.pdf", "public://copy-of-a.pdf"}, now=NOW)
        result = shared.reconcile("node", 7, {"public://a.pdf"}, now=NOW)
        assert result.changed_file_ids == set()
        assert _usage(ledger) == {5: 1}
        assert set(storage.get_matches(NODE_7)) == {"public://a.pdf"}


class TestConvergence:
    class _FailingLedger:
        """Delegating ledger whose first ``remove`` raises."""

        def __init__(self, inner):
            self.inner = inner
            self.failed = False

        def add(self, *args, **kwargs):
            self.inner.add(*args, **kwargs)

        def remove(self, *args, **kwargs):
            if not self.failed:
                self.failed = True
                raise RuntimeError("ledger unavailable")
            self.inner.remove(*args, **kwargs)

        def list_usage(self, file_id):
            return self.inner.list_usage(file_id)

        def list_owner_usage(self, namespace, owner_type, owner_id):
            return self.inner.list_owner_usage(namespace, owner_type, owner_id)

    def test_interrupted_run_converges(self, storage, catalog, ledger, reconciler):
        catalog.add_file("public://old.pdf", file_id=1)
        catalog.add_file("public://new.pdf", file_id=2)
        reconciler.reconcile("node", 7, {"public://old.pdf"}, now=NOW - 100)

        flaky = Reconciler(storage, FileFinder(catalog), self._FailingLedger(ledger), namespace=NAMESPACE)
        with pytest.raises(RuntimeError):
            flaky.reconcile("node", 7, {"public://new.pdf"}, now=NOW)
        # Scan status is only advanced by a completed run
        assert storage.get_scan_time(NODE_7) == NOW - 100

        flaky.reconcile("node", 7, {"public://new.pdf"}, now=NOW)
        assert _usage(ledger) == {2: 1}
        assert set(storage.get_matches(NODE_7)) == {"public://new.pdf"}
        assert storage.get_scan_time(NODE_7) == NOW


class TestFileCataloged:
    def test_late_file_arrival(self, reconciler, catalog, ledger, storage):
        reconciler.reconcile("node", 7, {"public://later.pdf"}, now=NOW)
        reconciler.reconcile("block", 3, {"public://later.pdf"}, now=NOW)

        fid = catalog.add_file("public://later.pdf")
        assert reconciler.on_file_cataloged(fid, "public://later.pdf") == {fid}
        assert ledger.list_usage(fid) == {NAMESPACE: {"node": {7: 1}, "block": {3: 1}}}
        assert storage.get_matches(NODE_7)["public://later.pdf"].managed_file_uri == "public://later.pdf"

        # A repeated trigger does not double count
        reconciler.on_file_cataloged(fid, "public://later.pdf")
        assert ledger.list_usage(fid)[NAMESPACE]["node"] == {7: 1}

    def test_non_canonical_catalog_uri(self, reconciler, catalog, ledger):
        reconciler.reconcile("node", 7, {"public://docs/a.pdf"}, now=NOW)
        fid = catalog.add_file("public:///docs/a.pdf")
        reconciler.on_file_cataloged(fid, "public:///docs/a.pdf")
        assert _usage(ledger) == {fid: 1}

    def test_file_nobody_links_to(self, reconciler, ledger):
        assert reconciler.on_file_cataloged(77, "public://lonely.pdf") == {77}
        assert ledger.list_usage(77) == {}

    def test_then_reconcile_keeps_single_usage(self, reconciler, catalog, ledger):
        reconciler.reconcile("node", 7, {"public://later.pdf"}, now=NOW)
        fid = catalog.add_file("public://later.pdf")
        reconciler.on_file_cataloged(fid, "public://later.pdf")
        reconciler.reconcile("node", 7, {"public://later.pdf"}, now=NOW + 1)
        assert _usage(ledger) == {fid: 1}


@pytest.mark.parametrize(
    "value,expected",
    [
        (7, 7), ("7", 7), (" 12 ", 12), (0, 0), ("x", None), (None, None), (False, None), (2.0, None),
        ("²", None), ("①", None), ("7²", None), ("٣", None), (-5, None), ("-5", None),
    ],
)
def test_coerce_owner_id(value, expected):
    assert coerce_owner_id(value) == expected
