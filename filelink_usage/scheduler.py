"""Scan scheduling: decide which owners need reconciliation.

The scheduler only reads. It enumerates owners page by page and compares
their scan status against the configured frequency; the reconciler does the
writing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .interfaces import ContentStore
from .storage import LinkUsageStorage

logger = logging.getLogger(__name__)

FREQUENCY_INTERVALS: Dict[str, int] = {
    "off": 0,
    "hourly": 3600,
    "daily": 86400,
    "weekly": 604800,
    "monthly": 2592000,
    "yearly": 31536000,
}
DEFAULT_FREQUENCY = "yearly"


def frequency_interval(frequency: Optional[str]) -> int:
    """Seconds between scans for *frequency*; ``off`` is 0 (always due)."""
    key = (frequency or "").strip().lower()
    if key not in FREQUENCY_INTERVALS:
        logger.warning("Unknown scan frequency %r, using %s", frequency, DEFAULT_FREQUENCY)
        key = DEFAULT_FREQUENCY
    return FREQUENCY_INTERVALS[key]


@dataclass
class DuePlan:
    """Outcome of the scheduling decision for one pass.

    The owner ids themselves are read lazily, one page at a time, through
    ``ScanScheduler.iter_due_pages``. ``stale_before`` is None when every
    owner is due.
    """

    full: bool = False
    due: bool = True
    stale_before: Optional[float] = None


class ScanScheduler:
    """Select owners whose scan status is missing or stale.

    *record_type* maps a content owner type to the type recorded in the
    match and scan-status stores (``block_content`` is stored as ``block``).
    """

    def __init__(
        self,
        content: ContentStore,
        store: LinkUsageStorage,
        batch_size: int = 100,
        record_type: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.content = content
        self.store = store
        self.batch_size = max(1, int(batch_size))
        self.record_type = record_type or (lambda owner_type: owner_type)

    def iter_owner_pages(self, owner_type: str) -> Iterator[List[int]]:
        """Yield ascending owner ids in pages of at most ``batch_size``."""
        after_id = 0
        while True:
            page = self.content.list_owner_ids(owner_type, after_id, self.batch_size)
            if not page:
                return
            yield page
            if len(page) < self.batch_size:
                return
            after_id = page[-1]

    def due_owners(
        self,
        now: float,
        frequency: str,
        last_global_scan: float,
        force: bool = False,
    ) -> DuePlan:
        """Decide whether a pass at *now* is due, and for which owners.

        Every owner is due when *force* is set or the match store is empty.
        Otherwise nothing is due until *last_global_scan* is one interval
        old, and then only owners never scanned or scanned before
        ``now - interval``.
        """
        interval = frequency_interval(frequency)

        if force or self.store.count_matches() == 0:
            if not force:
                logger.info("Match store is empty; scheduling a full scan")
            return DuePlan(full=True)

        if interval > 0 and last_global_scan + interval > now:
            logger.debug(
                "Scan not due: last=%.0f interval=%d now=%.0f", last_global_scan, interval, now
            )
            return DuePlan(due=False)

        return DuePlan(stale_before=now - interval)

    def iter_due_pages(self, plan: DuePlan) -> Iterator[Tuple[str, List[int]]]:
        """Yield ``(owner_type, owner_ids)`` for each page holding due owners.

        Pages are read one at a time, so memory stays bounded by
        ``batch_size`` however many owners exist. Scan status written while a
        page is processed does not affect paging, which follows content ids.
        """
        if not plan.due:
            return
        for owner_type in self.content.owner_types():
            recorded = self.record_type(owner_type)
            for page in self.iter_owner_pages(owner_type):
                if plan.stale_before is None:
                    yield owner_type, list(page)
                    continue
                scanned = self.store.get_scan_times(recorded, page)
                ids = [
                    oid for oid in page
                    if oid not in scanned or scanned[oid] < plan.stale_before
                ]
                if ids:
                    yield owner_type, ids
