"""Collaborator interfaces and value types shared across the tracker.

The tracker owns only derived state (match rows, scan status). Everything
else is provided by the host platform through the protocols below; the
SQLite implementations in :mod:`filelink_usage.backends` are reference
versions used by the bundled service, CLI and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Set, Tuple


class FileLinkUsageError(Exception):
    """Base class for tracker errors."""


class InvalidOwnerError(FileLinkUsageError, ValueError):
    """Raised by validating callers when an owner identifier is unusable."""


@dataclass(frozen=True)
class Owner:
    """A content unit that can hold free text, identified by (type, id)."""

    type: str
    id: int

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class MatchRow:
    """This owner's content currently contains this canonical link."""

    owner_type: str
    owner_id: int
    link: str
    seen_at: float
    managed_file_uri: Optional[str] = None


@dataclass(frozen=True)
class ResolvedFile:
    file_id: int
    uri: str


@dataclass
class ReconcileResult:
    """Outcome of one reconcile call; ``changed_file_ids`` feeds invalidation."""

    owner: Optional[Owner]
    links: Set[str] = field(default_factory=set)
    added: Set[int] = field(default_factory=set)
    removed: Set[int] = field(default_factory=set)
    repaired: Set[int] = field(default_factory=set)
    unresolved: Set[str] = field(default_factory=set)
    skipped: bool = False

    @property
    def changed_file_ids(self) -> Set[int]:
        return self.added | self.removed | self.repaired

    def to_dict(self) -> Dict[str, object]:
        return {
            "owner_type": self.owner.type if self.owner else None,
            "owner_id": self.owner.id if self.owner else None,
            "links": sorted(self.links),
            "added": sorted(self.added),
            "removed": sorted(self.removed),
            "repaired": sorted(self.repaired),
            "unresolved": sorted(self.unresolved),
            "changed_file_ids": sorted(self.changed_file_ids),
            "skipped": self.skipped,
        }


@dataclass
class ScanReport:
    """Aggregate counts for one scheduled or forced scan pass."""

    started_at: float
    full_scan: bool = False
    due: bool = True
    owners_scanned: int = 0
    links_detected: int = 0
    changed_file_ids: Set[int] = field(default_factory=set)
    failures: List[Tuple[str, int, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": "ok" if self.ok else "failed",
            "started_at": self.started_at,
            "full_scan": self.full_scan,
            "due": self.due,
            "owners_scanned": self.owners_scanned,
            "links_detected": self.links_detected,
            "changed_files": len(self.changed_file_ids),
            "failures": [
                {"owner_type": t, "owner_id": i, "error": e} for t, i, e in self.failures
            ],
        }


class ScanPassError(FileLinkUsageError):
    """A scan pass finished but at least one owner failed to reconcile."""

    def __init__(self, report: ScanReport) -> None:
        self.report = report
        super().__init__(
            f"{len(report.failures)} owner(s) failed during scan "
            f"({report.owners_scanned} scanned)"
        )


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

class ContentStore(Protocol):
    """Owner enumeration and text payload access."""

    def owner_types(self) -> List[str]:
        ...

    def list_owner_ids(self, owner_type: str, after_id: int, limit: int) -> List[int]:
        """Owner ids greater than *after_id*, ascending, at most *limit*."""
        ...

    def load_payloads(self, owner_type: str, owner_id: int) -> Optional[List[str]]:
        """Text payloads of an owner, or None when the owner does not exist."""
        ...


class FileResolver(Protocol):
    """Managed-file catalog lookups."""

    def resolve_uri(self, uri: str) -> Optional[int]:
        ...

    def resolve_file(self, file_id: int) -> Optional[str]:
        ...

    def find_by_filename(self, filename: str) -> List[Tuple[int, str]]:
        ...


class UsageLedger(Protocol):
    """Reference-counted usage records keyed by (file, namespace, type, id).

    Listings return snapshots; mutating the ledger never changes a dict
    that was already returned.
    """

    def add(self, file_id: int, namespace: str, owner_type: str, owner_id: int, count: int = 1) -> None:
        ...

    def remove(self, file_id: int, namespace: str, owner_type: str, owner_id: int, count: int = 1) -> None:
        ...

    def list_usage(self, file_id: int) -> Dict[str, Dict[str, Dict[int, int]]]:
        ...

    def list_owner_usage(self, namespace: str, owner_type: str, owner_id: int) -> Dict[int, int]:
        ...


class InvalidationSink(Protocol):
    """Fire-and-forget cache invalidation for changed files."""

    def invalidate(self, file_ids: Set[int]) -> None:
        ...
