"""Canonicalization of raw file link spellings.

A hard-coded link can show up in content in many shapes::

    https://www.example.com/sites/default/files/report.pdf?v=2#page=3
    /sites/default/files//report.pdf
    &quot;/sites/default/files/My%20Report.pdf&quot;
    public:///report.pdf

All of them are reduced to one comparable form, the *canonical link*
(``public://report.pdf``), which is the key used by the match store and the
file lookup. Links outside the public/private mounts are returned as a
cleaned path and never resolve to a managed file.

Normalization is total (never raises) and idempotent.
"""

from __future__ import annotations

import html
import re
from typing import Optional, Tuple
from urllib.parse import unquote

PUBLIC_SCHEME = "public://"
PRIVATE_SCHEME = "private://"
CANONICAL_SCHEMES: Tuple[str, ...] = (PUBLIC_SCHEME, PRIVATE_SCHEME)

DEFAULT_PUBLIC_PREFIX = "/sites/default/files/"
DEFAULT_PRIVATE_PREFIX = "/system/files/"

_QUOTE_CHARS = " \t\r\n\"'`"
_CANONICAL_RE = re.compile(r"^(public|private)://", re.IGNORECASE)
# scheme://host, or protocol-relative //host when the host has a dot or port
_ABSOLUTE_RE = re.compile(
    r"^(?:[a-z][a-z0-9+.\-]*:|(?=//[^/?#]*[.:]))//[^/?#]*", re.IGNORECASE
)
_SLASHES_RE = re.compile(r"/{2,}")
_QUERY_RE = re.compile(r"[?#].*", re.DOTALL)
_INDEX_RE = re.compile(r"/index(?:\.html)?$", re.IGNORECASE)


def _decode_entities(text: str) -> str:
    while True:
        decoded = html.unescape(text)
        if decoded == text:
            return decoded
        text = decoded


def _percent_decode(text: str) -> str:
    while "%" in text:
        decoded = unquote(text)
        if decoded == text:
            break
        text = decoded
    return text


def _clean_path(path: str) -> str:
    path = _percent_decode(path)
    path = _SLASHES_RE.sub("/", path)
    path = _QUERY_RE.sub("", path)
    while True:
        stripped = _INDEX_RE.sub("", path)
        if stripped == path:
            return path
        path = stripped


class Normalizer:
    """Normalize raw links into canonical ``public://`` / ``private://`` URIs."""

    def __init__(
        self,
        public_prefix: str = DEFAULT_PUBLIC_PREFIX,
        private_prefix: str = DEFAULT_PRIVATE_PREFIX,
    ) -> None:
        self.public_prefix = public_prefix
        self.private_prefix = private_prefix
        self._prefixes = (
            (public_prefix.lower(), PUBLIC_SCHEME),
            (private_prefix.lower(), PRIVATE_SCHEME),
        )

    def normalize(self, raw: Optional[str]) -> str:
        """Return the canonical form of *raw*.

        Steps: decode entities, trim quotes/whitespace, drop ``scheme://host``
        or a protocol-relative ``//host``, percent-decode, collapse slashes,
        drop query and fragment, drop a trailing ``/index`` or
        ``/index.html``, then map the public/private mount prefix onto its
        canonical scheme.
        """
        if not isinstance(raw, str):
            return ""
        text = raw
        # A changing pass either shortens the text or lower-cases the scheme,
        # so len(raw) + 2 passes always reach the fixed point.
        for _ in range(len(raw) + 2):
            result = self._normalize_once(text)
            if result == text:
                break
            text = result
        return text

    def _normalize_once(self, raw: str) -> str:
        text = _decode_entities(raw).strip(_QUOTE_CHARS)
        if not text:
            return ""

        canonical = _CANONICAL_RE.match(text)
        if canonical:
            scheme = canonical.group(1).lower() + "://"
            path = _clean_path(text[canonical.end():]).lstrip("/")
            return scheme + path

        absolute = _ABSOLUTE_RE.match(text)
        if absolute:
            text = text[absolute.end():]

        path = _clean_path(text)
        lowered = path.lower()
        for prefix, scheme in self._prefixes:
            if lowered.startswith(prefix):
                return scheme + path[len(prefix):].lstrip("/")
        return path

    def to_url_path(self, link: str) -> str:
        """Map a canonical link back onto its root-relative mount path."""
        if link.startswith(PUBLIC_SCHEME):
            return self.public_prefix + link[len(PUBLIC_SCHEME):]
        if link.startswith(PRIVATE_SCHEME):
            return self.private_prefix + link[len(PRIVATE_SCHEME):]
        return link


def is_managed(link: str) -> bool:
    """True when *link* is in one of the canonical managed-file schemes."""
    return link.startswith(CANONICAL_SCHEMES)


_default = Normalizer()


def normalize(raw: Optional[str]) -> str:
    """Normalize with the default mount prefixes."""
    return _default.normalize(raw)
