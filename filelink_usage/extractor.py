"""Link extraction from owner text payloads.

Two strategies share one contract, ``extract(...) -> Set[str]`` of
canonical links:

- LinkExtractor: scans raw text fields (HTML, Markdown, plain text)
- RenderedLinkExtractor: scans the owner's rendered output, for links that
  only appear after template expansion

Neither checks whether a file exists; resolution happens later.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Iterable, List, Optional, Pattern, Set

from .normalizer import (
    DEFAULT_PRIVATE_PREFIX,
    DEFAULT_PUBLIC_PREFIX,
    Normalizer,
    is_managed,
)

logger = logging.getLogger(__name__)

# A link ends at a quote, whitespace or tag delimiter.
_LINK_BODY = r"[^\"'\s<>]+"
_TRAILING_PUNCT = ".,)"


class LinkExtractor:
    """Find hard-coded file links in free text and canonicalize them."""

    def __init__(self, normalizer: Optional[Normalizer] = None) -> None:
        self.normalizer = normalizer or Normalizer()
        self.patterns = self._build_patterns(
            self.normalizer.public_prefix or DEFAULT_PUBLIC_PREFIX,
            self.normalizer.private_prefix or DEFAULT_PRIVATE_PREFIX,
        )

    @staticmethod
    def _build_patterns(public_prefix: str, private_prefix: str) -> List[Pattern[str]]:
        prefixes = "|".join(
            re.escape(p.strip("/")) for p in (public_prefix, private_prefix)
        )
        return [
            # public://foo.pdf, private://bar/baz.txt
            re.compile(r"(?:public|private)://" + _LINK_BODY, re.IGNORECASE),
            # https://example.com/sites/default/files/foo.pdf
            re.compile(
                r"https?://[^/\"'\s<>]+/(?:" + prefixes + r")/" + _LINK_BODY,
                re.IGNORECASE,
            ),
            # /sites/default/files/foo.pdf
            re.compile(r"/(?:" + prefixes + r")/" + _LINK_BODY, re.IGNORECASE),
        ]

    def find_raw(self, text: str) -> List[str]:
        """Return raw link-like substrings in *text*, in document order."""
        found: List[str] = []
        for pattern in self.patterns:
            for match in pattern.finditer(text):
                raw = match.group(0).rstrip(_TRAILING_PUNCT)
                if raw:
                    found.append(raw)
        return found

    def extract_text(self, text: Optional[str]) -> Set[str]:
        """Canonical links found in a single payload."""
        if not isinstance(text, str) or not text:
            return set()
        links: Set[str] = set()
        for raw in self.find_raw(text):
            link = self.normalizer.normalize(raw)
            if is_managed(link) and link not in links:
                links.add(link)
        return links

    def extract(self, payloads: Optional[Iterable[Optional[str]]]) -> Set[str]:
        """Deduplicated canonical links across all *payloads*."""
        links: Set[str] = set()
        if payloads is None:
            return links
        if isinstance(payloads, str):
            payloads = [payloads]
        for payload in payloads:
            if payload is not None and not isinstance(payload, str):
                logger.debug("Skipping non-text payload of type %s", type(payload).__name__)
                continue
            links |= self.extract_text(payload)
        return links


class RenderedLinkExtractor:
    """Extract links from rendered owner output.

    *render* maps ``(owner_type, owner_id)`` to the rendered markup, or None
    when nothing can be rendered. Render errors propagate: reading a failed
    render as "no links" would strip the owner's usage records.
    """

    def __init__(
        self,
        render: Callable[[str, int], Optional[str]],
        extractor: Optional[LinkExtractor] = None,
    ) -> None:
        self.render = render
        self.extractor = extractor or LinkExtractor()

    def extract(self, owner_type: str, owner_id: int) -> Set[str]:
        markup = self.render(owner_type, owner_id)
        return self.extractor.extract([markup])
