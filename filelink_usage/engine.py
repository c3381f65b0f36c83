"""Tracker orchestration.

``FileLinkUsageEngine`` receives every collaborator through its constructor
and exposes the operations used by content lifecycle hooks, the scheduled
scan, the admin API and the CLI:

    extract_and_reconcile / reconcile / owner_saved / owner_deleted
    file_cataloged / manage_usage / mark_owner_for_scan
    run_scheduled_scan / force_full_rescan / purge_derived_state
    usage_for_file / stats / settings
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Optional, Set

from .backends import (
    LoggingInvalidationSink,
    SqliteContentStore,
    SqliteFileCatalog,
    SqliteUsageLedger,
)
from .batcher import InvalidationBatcher
from .config import FREQUENCIES, Config
from .extractor import LinkExtractor, RenderedLinkExtractor
from .finder import FileFinder
from .interfaces import (
    ContentStore,
    FileResolver,
    InvalidationSink,
    Owner,
    ReconcileResult,
    ScanPassError,
    ScanReport,
    UsageLedger,
)
from .metrics import collector
from .normalizer import Normalizer
from .reconciler import Reconciler, coerce_owner_id
from .scheduler import ScanScheduler
from .storage import LAST_SCAN_KEY, LinkUsageStorage

logger = logging.getLogger(__name__)


class FileLinkUsageEngine:
    """Keeps the usage ledger in line with the file links found in content."""

    def __init__(
        self,
        store: LinkUsageStorage,
        content: ContentStore,
        resolver: FileResolver,
        ledger: UsageLedger,
        sink: InvalidationSink,
        config: Optional[Config] = None,
    ) -> None:
        self.config = config or Config()
        self.store = store
        self.content = content
        self.ledger = ledger
        self.sink = sink

        self.normalizer = Normalizer(self.config.public_prefix, self.config.private_prefix)
        self.extractor = LinkExtractor(self.normalizer)
        self.finder = FileFinder(resolver, self.normalizer)
        self.reconciler = Reconciler(
            store,
            self.finder,
            ledger,
            namespace=self.config.namespace,
            verbose=self.config.verbose_logging,
        )
        self.scheduler = ScanScheduler(
            content, store, batch_size=self.config.batch_size, record_type=self.record_type
        )

        render = getattr(content, "render", None)
        self.rendered_extractor = (
            RenderedLinkExtractor(render, self.extractor) if callable(render) else None
        )

        self._content_types = {v: k for k, v in self.config.type_aliases.items()}

    # ------------------------------------------------------------------
    # Owner types
    # ------------------------------------------------------------------

    def record_type(self, owner_type: str) -> str:
        """Owner type as written to the match store, scan status and ledger."""
        return self.config.type_aliases.get(owner_type, owner_type)

    def content_type(self, owner_type: str) -> str:
        """Owner type as known to the content store."""
        return self._content_types.get(owner_type, owner_type)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def scan_frequency(self) -> str:
        return str(self.store.get_setting("scan_frequency", self.config.scan_frequency))

    @property
    def verbose_logging(self) -> bool:
        return bool(self.store.get_setting("verbose_logging", self.config.verbose_logging))

    def settings(self) -> Dict[str, Any]:
        return {
            "scan_frequency": self.scan_frequency,
            "verbose_logging": self.verbose_logging,
            "last_scan": self.store.get_last_scan(),
        }

    def update_settings(
        self,
        scan_frequency: Optional[str] = None,
        verbose_logging: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Persist runtime overrides; they take precedence over the config."""
        if scan_frequency is not None:
            frequency = scan_frequency.strip().lower()
            if frequency not in FREQUENCIES:
                raise ValueError(f"scan_frequency must be one of {', '.join(FREQUENCIES)}")
            self.store.set_setting("scan_frequency", frequency)
        if verbose_logging is not None:
            self.store.set_setting("verbose_logging", bool(verbose_logging))
        settings = self.settings()
        logger.info(
            "Settings updated: scan_frequency=%s verbose_logging=%s",
            settings["scan_frequency"],
            settings["verbose_logging"],
        )
        return settings

    def _sync_settings(self) -> None:
        self.reconciler.verbose = self.verbose_logging

    # ------------------------------------------------------------------
    # Single-owner operations
    # ------------------------------------------------------------------

    def _extract(self, content_type: str, owner_id: int, payloads: Iterable[Optional[str]]) -> Set[str]:
        links = self.extractor.extract(payloads)
        if not links and self.config.render_fallback and self.rendered_extractor is not None:
            links = self.rendered_extractor.extract(content_type, owner_id)
            if links:
                logger.debug("Rendered output of %s:%d yielded %d link(s)", content_type, owner_id, len(links))
        return links

    def _finish(self, result: ReconcileResult, batcher: Optional[InvalidationBatcher]) -> ReconcileResult:
        collector.record_usage_changes(
            added=len(result.added), removed=len(result.removed), repaired=len(result.repaired)
        )
        changed = result.changed_file_ids
        if changed:
            if batcher is not None:
                batcher.add(changed)
            else:
                self.sink.invalidate(set(changed))
        return result

    def reconcile(
        self,
        owner_type: str,
        owner_id: Any,
        found_links: Iterable[str],
        *,
        deleted: bool = False,
        now: Optional[float] = None,
    ) -> ReconcileResult:
        """Reconcile an owner against an already extracted set of links."""
        self._sync_settings()
        result = self.reconciler.reconcile(
            self.record_type(owner_type), owner_id, found_links, deleted=deleted, now=now
        )
        return self._finish(result, None)

    def extract_and_reconcile(
        self,
        owner_type: str,
        owner_id: Any,
        *,
        now: Optional[float] = None,
        batcher: Optional[InvalidationBatcher] = None,
    ) -> ReconcileResult:
        """Load an owner's payloads, extract links and reconcile.

        An owner the content store no longer knows is reconciled as deleted.
        """
        if batcher is None:
            self._sync_settings()
        oid = coerce_owner_id(owner_id)
        if oid is None:
            logger.warning("Skipping %s with malformed id %r", owner_type, owner_id)
            return ReconcileResult(owner=None, skipped=True)

        content_type = self.content_type(owner_type)
        payloads = self.content.load_payloads(content_type, oid)
        if payloads is None:
            logger.info("%s:%d no longer exists; removing its usage", content_type, oid)
            result = self.reconciler.reconcile(
                self.record_type(content_type), oid, (), deleted=True, now=now
            )
        else:
            links = self._extract(content_type, oid, payloads)
            result = self.reconciler.reconcile(
                self.record_type(content_type), oid, links, now=now
            )
        return self._finish(result, batcher)

    def owner_saved(
        self,
        owner_type: str,
        owner_id: Any,
        payloads: Iterable[Optional[str]],
        *,
        now: Optional[float] = None,
    ) -> ReconcileResult:
        """Create/update hook: reconcile against the saved payload snapshot."""
        self._sync_settings()
        oid = coerce_owner_id(owner_id)
        if oid is None:
            logger.warning("Skipping %s with malformed id %r", owner_type, owner_id)
            return ReconcileResult(owner=None, skipped=True)
        content_type = self.content_type(owner_type)
        links = self._extract(content_type, oid, payloads)
        result = self.reconciler.reconcile(self.record_type(content_type), oid, links, now=now)
        return self._finish(result, None)

    def owner_deleted(self, owner_type: str, owner_id: Any) -> ReconcileResult:
        """Delete hook: drop every match row, usage record and scan status."""
        return self.reconcile(owner_type, owner_id, (), deleted=True)

    def file_cataloged(self, file_id: int, uri: str) -> Set[int]:
        """File-insert hook: attach usage for owners that already link to *uri*."""
        self._sync_settings()
        changed = self.reconciler.on_file_cataloged(int(file_id), uri)
        self.sink.invalidate(set(changed))
        return changed

    def manage_usage(
        self,
        owner_type: str,
        owner_id: Any,
        uris: Optional[Iterable[str]],
        *,
        now: Optional[float] = None,
    ) -> ReconcileResult:
        """Reconcile an owner against an explicit list of file URIs.

        ``None`` or a list that normalizes to nothing leaves every store
        untouched.
        """
        if uris is None:
            return ReconcileResult(owner=None, skipped=True)
        links = {link for link in (self.normalizer.normalize(u) for u in uris) if link}
        if not links:
            logger.debug("manage_usage for %s:%s with no URIs; nothing to do", owner_type, owner_id)
            return ReconcileResult(owner=None, skipped=True)
        return self.reconcile(owner_type, owner_id, links, now=now)

    def mark_owner_for_scan(self, owner_type: str, owner_id: Any) -> bool:
        """Make an owner stale so the next due scan pass reconciles it."""
        oid = coerce_owner_id(owner_id)
        if oid is None:
            logger.warning("Cannot mark %s with malformed id %r", owner_type, owner_id)
            return False
        self.store.set_scanned(Owner(self.record_type(owner_type), oid), 0)
        return True

    # ------------------------------------------------------------------
    # Scan passes
    # ------------------------------------------------------------------

    def run_scheduled_scan(self, now: Optional[float] = None, *, full: bool = False) -> ScanReport:
        """Reconcile every due owner, then invalidate changed files once.

        A failing owner does not stop the pass. When any owner failed the
        last-scan marker is left alone, so the pass is retried, and
        ``ScanPassError`` is raised with the report.
        """
        now = time.time() if now is None else now
        self._sync_settings()
        frequency = self.scan_frequency
        plan = self.scheduler.due_owners(now, frequency, self.store.get_last_scan(), force=full)
        report = ScanReport(started_at=now, full_scan=plan.full, due=plan.due)

        if not plan.due:
            collector.record_scan("skipped", 0, 0)
            return report

        logger.info("Scan pass started: frequency=%s full=%s", frequency, report.full_scan)
        with InvalidationBatcher(self.sink) as batcher:
            for owner_type, owner_ids in self.scheduler.iter_due_pages(plan):
                for owner_id in owner_ids:
                    try:
                        result = self.extract_and_reconcile(owner_type, owner_id, now=now, batcher=batcher)
                    except Exception as exc:
                        logger.exception("Scan failed for %s:%s", owner_type, owner_id)
                        report.failures.append((owner_type, owner_id, str(exc)))
                        continue
                    report.owners_scanned += 1
                    report.links_detected += len(result.links)
                    report.changed_file_ids |= result.changed_file_ids

        if report.ok:
            self.store.set_last_scan(now)
        self._refresh_gauges()
        collector.record_scan("ok" if report.ok else "failed", report.owners_scanned, report.links_detected)
        logger.info(
            "Scan pass finished: owners=%d links=%d changed_files=%d failures=%d",
            report.owners_scanned,
            report.links_detected,
            len(report.changed_file_ids),
            len(report.failures),
        )
        if not report.ok:
            raise ScanPassError(report)
        return report

    def force_full_rescan(self, now: Optional[float] = None) -> ScanReport:
        """Mark every owner stale and run a pass regardless of frequency."""
        logger.info("Full rescan requested")
        self.store.truncate_scan_status()
        self.store.delete_state(LAST_SCAN_KEY)
        return self.run_scheduled_scan(now, full=True)

    def purge_derived_state(self) -> None:
        """Drop match rows, scan status and the last-scan marker.

        The usage ledger is left as is; the next pass starts cold and
        reconciles it again.
        """
        self.store.truncate_matches()
        self.store.truncate_scan_status()
        self.store.delete_state(LAST_SCAN_KEY)
        self._refresh_gauges()
        logger.info("Derived state purged")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def usage_for_file(self, file_id: int) -> Dict[str, Any]:
        uri = self.finder.resolver.resolve_file(int(file_id))
        rows = []
        if uri:
            rows = self.store.find_owners_by_link(self.normalizer.normalize(uri), uri)
        return {
            "file_id": int(file_id),
            "uri": uri,
            "usage": self.ledger.list_usage(int(file_id)),
            "links": [
                {
                    "owner_type": r.owner_type,
                    "owner_id": r.owner_id,
                    "link": r.link,
                    "seen_at": r.seen_at,
                }
                for r in rows
            ],
        }

    def stats(self) -> Dict[str, Any]:
        stats = self.store.stats()
        stats["scan_frequency"] = self.scan_frequency
        stats["verbose_logging"] = self.verbose_logging
        stats["namespace"] = self.config.namespace
        stats["owner_types"] = self.content.owner_types()
        return stats

    def _refresh_gauges(self) -> None:
        stats = self.store.stats()
        collector.set_runtime_gauges(
            match_rows=stats["total_matches"],
            unresolved_matches=stats["unresolved_matches"],
            last_scan_timestamp=stats["last_scan"],
        )

    def close(self) -> None:
        for part in (self.store, self.content, self.finder.resolver, self.ledger):
            close = getattr(part, "close", None)
            if callable(close):
                close()


def open_engine(config: Config) -> FileLinkUsageEngine:
    """Engine backed by the SQLite reference collaborators in ``config.db_path``."""
    return FileLinkUsageEngine(
        store=LinkUsageStorage(config.db_path),
        content=SqliteContentStore(config.db_path, owner_types=config.owner_types),
        resolver=SqliteFileCatalog(config.db_path),
        ledger=SqliteUsageLedger(config.db_path),
        sink=LoggingInvalidationSink(),
        config=config,
    )
