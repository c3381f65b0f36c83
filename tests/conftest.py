"""Shared fixtures for file link usage tests."""

from __future__ import annotations

from typing import List, Set

import pytest

from filelink_usage.backends import SqliteContentStore, SqliteFileCatalog, SqliteUsageLedger
from filelink_usage.config import Config
from filelink_usage.engine import FileLinkUsageEngine
from filelink_usage.finder import FileFinder
from filelink_usage.metrics import reset_metrics
from filelink_usage.reconciler import Reconciler
from filelink_usage.storage import LinkUsageStorage

NAMESPACE = "filelink_usage"

# A fixed scan clock, well past any frequency interval.
NOW = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Keep tests independent of the host environment
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Drop FILELINK_USAGE_* variables and reset process-wide metrics."""
    import os

    for key in list(os.environ):
        if key.startswith("FILELINK_USAGE_"):
            monkeypatch.delenv(key, raising=False)
    reset_metrics()
    yield
    reset_metrics()


# ---------------------------------------------------------------------------
# Invalidation sink
# ---------------------------------------------------------------------------

class RecordingSink:
    """Invalidation sink that remembers every call."""

    def __init__(self) -> None:
        self.calls: List[Set[int]] = []

    def invalidate(self, file_ids: Set[int]) -> None:
        self.calls.append(set(file_ids))

    @property
    def invalidated(self) -> Set[int]:
        result: Set[int] = set()
        for call in self.calls:
            result |= call
        return result


# ---------------------------------------------------------------------------
# Storage and collaborators (one temp SQLite file per test)
# ---------------------------------------------------------------------------

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "filelink_usage.sqlite")


@pytest.fixture
def storage(db_path):
    s = LinkUsageStorage(db_path)
    yield s
    s.close()


@pytest.fixture
def content(db_path):
    c = SqliteContentStore(db_path, owner_types=["node", "block_content", "taxonomy_term"])
    yield c
    c.close()


@pytest.fixture
def catalog(db_path):
    c = SqliteFileCatalog(db_path)
    yield c
    c.close()


@pytest.fixture
def ledger(db_path):
    led = SqliteUsageLedger(db_path)
    yield led
    led.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def config(db_path):
    return Config(db_path=db_path, scan_frequency="daily")


@pytest.fixture
def reconciler(storage, catalog, ledger):
    return Reconciler(storage, FileFinder(catalog), ledger, namespace=NAMESPACE)


@pytest.fixture
def engine(storage, content, catalog, ledger, sink, config):
    """Engine wired to the temp database and a recording sink."""
    return FileLinkUsageEngine(
        store=storage,
        content=content,
        resolver=catalog,
        ledger=ledger,
        sink=sink,
        config=config,
    )


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

SAMPLE_HTML = (
    '<p>See the <a href="/sites/default/files/report.pdf">annual report</a> and '
    '<a href="https://www.example.com/sites/default/files/docs/guide.pdf?v=2#intro">the guide</a>.</p>'
    '<img src="/system/files/private/photo.jpg" alt="">'
)


@pytest.fixture
def sample_html():
    return SAMPLE_HTML
