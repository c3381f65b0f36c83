"""Usage-ledger reconciliation for one owner.

Given the canonical links currently found in an owner's content, bring the
match store and the usage ledger in line with them:

* every found link has a match row, refreshed to the scan time
* every managed file referenced by a found link has exactly one usage record
  in our namespace for this owner
* no other usage record exists in our namespace for this owner

The plan is computed from the stores before anything is written, so a run
interrupted halfway converges on the next call.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, Optional, Set, Union

from .finder import FileFinder
from .interfaces import Owner, ReconcileResult, ResolvedFile, UsageLedger
from .storage import LinkUsageStorage

logger = logging.getLogger(__name__)

OwnerId = Union[int, str]


def coerce_owner_id(owner_id: object) -> Optional[int]:
    """Return *owner_id* as an int, or None if it is not a non-negative integer id.

    Strings must be ASCII decimal digits; ``"²"`` or ``"-5"`` are rejected.
    """
    if isinstance(owner_id, bool):
        return None
    if isinstance(owner_id, int):
        return owner_id if owner_id >= 0 else None
    if isinstance(owner_id, str):
        text = owner_id.strip()
        if text.isascii() and text.isdecimal():
            return int(text)
    return None


class Reconciler:
    def __init__(
        self,
        store: LinkUsageStorage,
        finder: FileFinder,
        ledger: UsageLedger,
        namespace: str = "filelink_usage",
        verbose: bool = False,
    ) -> None:
        self.store = store
        self.finder = finder
        self.ledger = ledger
        self.namespace = namespace
        self.verbose = verbose

    def _log(self, msg: str, *args: object) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    # ------------------------------------------------------------------
    # Owner reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        owner_type: str,
        owner_id: OwnerId,
        found_links: Iterable[str],
        *,
        deleted: bool = False,
        now: Optional[float] = None,
    ) -> ReconcileResult:
        """Reconcile one owner against the links currently in its content.

        With ``deleted=True`` the found set is ignored and every match row,
        usage record and the scan status of the owner are removed.
        """
        oid = coerce_owner_id(owner_id)
        if oid is None:
            logger.warning("Skipping reconcile for %s with malformed id %r", owner_type, owner_id)
            return ReconcileResult(owner=None, skipped=True)

        owner = Owner(owner_type, oid)
        now = time.time() if now is None else now
        found: Set[str] = set() if deleted else {link for link in found_links if link}

        # --- Plan --------------------------------------------------------
        old_rows = self.store.get_matches(owner)
        to_remove = set(old_rows) - found
        resolved: Dict[str, Optional[ResolvedFile]] = {
            link: self.finder.find(link) for link in found
        }
        desired = {r.file_id for r in resolved.values() if r is not None}
        current = self.ledger.list_owner_usage(self.namespace, owner.type, owner.id)

        result = ReconcileResult(owner=owner, links=set(found))

        # --- Match rows for found links ------------------------------------
        for link in sorted(found):
            match = resolved[link]
            if match is None:
                result.unresolved.add(link)
                if link not in old_rows:
                    self._log("No managed file for %s in %s", link, owner)
            self.store.upsert_match(owner, link, now, match.uri if match else None)

        # --- Usage for referenced files ------------------------------------
        for file_id in sorted(desired):
            count = current.get(file_id, 0)
            if count <= 0:
                self.ledger.add(file_id, self.namespace, owner.type, owner.id)
                result.added.add(file_id)
                self._log("Added usage of file %d by %s", file_id, owner)
            elif count > 1:
                self.ledger.remove(file_id, self.namespace, owner.type, owner.id, count - 1)
                result.repaired.add(file_id)
                self._log("Repaired usage of file %d by %s (%d -> 1)", file_id, owner, count)

        # --- Usage no longer backed by content -----------------------------
        for file_id, count in sorted(current.items()):
            if file_id in desired or count <= 0:
                continue
            self.ledger.remove(file_id, self.namespace, owner.type, owner.id, count)
            result.removed.add(file_id)
            self._log("Removed usage of file %d by %s", file_id, owner)

        if deleted:
            self.store.delete_owner_matches(owner)
            self.store.delete_scan_status(owner)
        else:
            for link in sorted(to_remove):
                self.store.delete_match(owner, link)
            self.store.set_scanned(owner, now)

        return result

    # ------------------------------------------------------------------
    # File arrival
    # ------------------------------------------------------------------

    def on_file_cataloged(self, file_id: int, uri: str) -> Set[int]:
        """Attach usage for owners that linked to a file before it existed.

        Returns the ids to invalidate; the new file itself is always among
        them.
        """
        link = self.finder.normalizer.normalize(uri)
        rows = self.store.find_owners_by_link(link, uri) if link else []

        seen: Set[Owner] = set()
        for row in rows:
            owner = Owner(row.owner_type, row.owner_id)
            if owner not in seen:
                seen.add(owner)
                current = self.ledger.list_owner_usage(self.namespace, owner.type, owner.id)
                if current.get(file_id, 0) <= 0:
                    self.ledger.add(file_id, self.namespace, owner.type, owner.id)
                    self._log("Added usage of new file %d by %s", file_id, owner)
            if row.managed_file_uri != uri:
                self.store.set_managed_uri(owner, row.link, uri)

        return {int(file_id)}
