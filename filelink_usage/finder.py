"""Managed-file lookup for canonical links."""

from __future__ import annotations

import logging
import posixpath
from typing import Optional

from .interfaces import FileResolver, ResolvedFile
from .normalizer import Normalizer, is_managed

logger = logging.getLogger(__name__)


class FileFinder:
    """Resolve a canonical link to a managed file.

    The catalog is asked for the exact URI first. Catalog entries stored in a
    non-canonical spelling (``public:///x.txt``, ``PUBLIC://x.txt``) are found
    through a filename lookup whose candidates are normalized and compared.
    """

    def __init__(self, resolver: FileResolver, normalizer: Optional[Normalizer] = None) -> None:
        self.resolver = resolver
        self.normalizer = normalizer or Normalizer()

    def find(self, link: str) -> Optional[ResolvedFile]:
        if not link or not is_managed(link):
            return None

        file_id = self.resolver.resolve_uri(link)
        if file_id is not None:
            return ResolvedFile(file_id=file_id, uri=link)

        filename = posixpath.basename(link.split("://", 1)[1])
        if not filename:
            return None
        for candidate_id, candidate_uri in self.resolver.find_by_filename(filename):
            if self.normalizer.normalize(candidate_uri) == link:
                logger.debug("Resolved %s via catalog entry %s", link, candidate_uri)
                return ResolvedFile(file_id=candidate_id, uri=candidate_uri)
        return None
