"""
rewriter.py — Bidirectional payload, query and header rewriting.

Three call shapes share the byte substitution of ``DomainMapping``:

* **payload**  whole request/response bodies;
* **query**    every value of every query key, rewritten one occurrence
               at a time, order and repeats preserved;
* **headers**  a closed allow-list (``Origin``, ``Referer``) on messages
               whose path matches a ``HeaderPatchRule``, plus synthesized
               policy headers (``X-Frame-Options``).

Rewriting is total: a value without a recognisable host comes back
unchanged, an absent value is a no-op.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from mitmproxy.http import Headers

from rewrite_bridge.mapping import DomainMapping, RewriteDirection

logger = logging.getLogger(__name__)

DEFAULT_PATCH_PATHS: tuple[str, ...] = ("/log*", "*playlog*")

# Header names a HeaderPatchRule may touch
PATCHABLE_HEADERS: frozenset[str] = frozenset({"origin", "referer", "x-frame-options"})


# ============================================================================
# Header patch rules
# ============================================================================


@dataclass(frozen=True)
class HeaderPatchRule:
    """Sets *header* to ``template.format(rewrite(literal))`` on matching paths.

    Attributes
    ----------
    header:
        One of ``Origin``, ``Referer``, ``X-Frame-Options``.
    paths:
        ``fnmatch`` globs tested against the path component only
        (query string stripped), e.g. ``"/log*"`` or ``"*playlog*"``.
    literal:
        Fixed origin-side URL the value is derived from.
    template:
        Format string wrapping the rewritten literal.
    synthesize:
        ``False`` replaces the header only when the message already has
        it.  ``True`` adds it unconditionally on matching paths.
    """

    header: str
    paths: tuple[str, ...]
    literal: str
    template: str = "{}"
    synthesize: bool = False

    def __post_init__(self) -> None:
        if self.header.lower() not in PATCHABLE_HEADERS:
            raise ValueError(f"Header {self.header!r} is not patchable")

    def matches(self, path: str) -> bool:
        bare = path.split("?", 1)[0]
        return any(fnmatch.fnmatchcase(bare, pattern) for pattern in self.paths)


class HeaderPatchTable:
    """All header patch rules, resolved against a mapping once up front."""

    def __init__(self, rules: Iterable[HeaderPatchRule], mapping: DomainMapping) -> None:
        self.rules: tuple[HeaderPatchRule, ...] = tuple(rules)
        self._values: tuple[tuple[HeaderPatchRule, str], ...] = tuple(
            (rule, rule.template.format(mapping.rewrite_text(rule.literal, RewriteDirection.TOWARD_PROXY)))
            for rule in self.rules
        )

    @classmethod
    def default(
        cls,
        mapping: DomainMapping,
        paths: Sequence[str] = DEFAULT_PATCH_PATHS,
        literal: Optional[str] = None,
        frame_header: bool = True,
    ) -> HeaderPatchTable:
        origin = literal or mapping.origin.origin
        paths = tuple(paths)
        rules = [
            HeaderPatchRule("Origin", paths, origin),
            HeaderPatchRule("Referer", paths, origin.rstrip("/") + "/"),
        ]
        if frame_header:
            rules.append(HeaderPatchRule("X-Frame-Options", paths, origin, template="ALLOW-FROM {}", synthesize=True))
        return cls(rules, mapping)

    def values_for(self, path: str) -> list[tuple[HeaderPatchRule, str]]:
        return [(rule, value) for rule, value in self._values if rule.matches(path)]

    def apply(self, path: str, headers: Headers) -> list[str]:
        """Patch *headers* in place; return the names that were set."""
        changed: list[str] = []
        for rule, value in self.values_for(path):
            if not rule.synthesize and rule.header not in headers:
                continue
            headers[rule.header] = value
            changed.append(rule.header)
        if changed:
            logger.debug("Patched headers %s for %s", changed, path)
        return changed

    def __len__(self) -> int:
        return len(self.rules)


# ============================================================================
# Rewriter
# ============================================================================


class BidirectionalRewriter:
    def __init__(self, mapping: DomainMapping, header_rules: Optional[HeaderPatchTable] = None) -> None:
        self.mapping = mapping
        self.header_rules = header_rules if header_rules is not None else HeaderPatchTable((), mapping)

    # -- payload -----------------------------------------------------------

    def rewrite_payload(self, body: bytes, direction: RewriteDirection) -> bytes:
        return self.mapping.rewrite(body, direction)

    def rewrite_value(self, value: Optional[str], direction: RewriteDirection) -> Optional[str]:
        if not value:
            return value
        return self.mapping.rewrite_text(value, direction)

    # -- query -------------------------------------------------------------

    def rewrite_query_pairs(
        self, pairs: Iterable[tuple[str, str]], direction: RewriteDirection
    ) -> list[tuple[str, str]]:
        return [(key, self.mapping.rewrite_text(value, direction)) for key, value in pairs]

    def rewrite_query(self, query: str, direction: RewriteDirection) -> str:
        """Rewrite each query value independently.

        ``k=v1&k=v2`` becomes ``k=rewrite(v1)&k=rewrite(v2)``.  Segments
        whose decoded value does not change are kept byte for byte, so
        bare keys, ``+`` and escapes that are not UTF-8 survive.  Changed
        values are re-quoted; a ``+`` inside one stays a ``+``.
        """
        if not query:
            return query
        segments = query.split("&")
        changed = False
        for i, segment in enumerate(segments):
            key, sep, value = segment.partition("=")
            if not sep or not value:
                continue
            decoded = unquote(value, errors="surrogateescape")
            rewritten = self.mapping.rewrite_text(decoded, direction)
            if rewritten == decoded:
                continue
            segments[i] = f"{key}={quote(rewritten, safe='+', errors='surrogateescape')}"
            changed = True
        return "&".join(segments) if changed else query

    def rewrite_url(self, url: str, direction: RewriteDirection) -> str:
        parts = urlsplit(url)
        netloc = self.mapping.map_netloc(parts.netloc, direction) if parts.netloc else parts.netloc
        scheme = parts.scheme
        if netloc != parts.netloc:
            scheme = self.mapping.endpoint(direction).scheme
        query = self.rewrite_query(parts.query, direction)
        if (scheme, netloc, query) == (parts.scheme, parts.netloc, parts.query):
            return url
        return urlunsplit((scheme, netloc, parts.path, query, parts.fragment))

    # -- headers -----------------------------------------------------------

    def rewrite_headers(self, path: str, headers: Headers) -> list[str]:
        return self.header_rules.apply(path, headers)
