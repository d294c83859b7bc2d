"""
mapping.py — Domain mapping table and token codec.

A ``DomainMapping`` ties a *proxy-facing* origin (what the client sees)
to an *origin* (where the content really lives).  Rewriting is literal
byte substitution driven by an explicit token table: every known
representation of the origin inside a payload gets one ``TokenForm``
row holding the origin-side literal and its proxy-side sibling.

Known representations
~~~~~~~~~~~~~~~~~~~~~
* ``plain``            ``https://origin.example[:port]``, the bare netloc
                       and the bare host name.
* ``json_escaped``     ``https:\\/\\/origin.example`` as found inside JSON
                       and minified JS string literals.
* ``percent_encoded``  ``https%3A%2F%2Forigin.example`` (both hex cases).
* ``length_prefixed``  varint length followed by the full origin URL, the
                       opaque embedding used by protobuf-style blobs.  The
                       sibling carries its *own* length prefix.  A
                       prefix that is itself printable text (URLs of 32 to
                       126 bytes) is indistinguishable from an ordinary
                       character, so the row is left out unless
                       ``force_length_prefixed`` forces it.  Without the
                       row the plain form still rewrites the URL inside
                       such a blob but the old prefix stays behind.
* ``extra``            fixed literal pairs from configuration.

No blob is ever decoded.  A fixed string is searched for and swapped
for a fixed sibling, so the output is not length preserving and
Content-Length must be computed after this codec runs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union
from urllib.parse import quote, urlsplit

logger = logging.getLogger(__name__)

# Prefix bytes that are indistinguishable from ordinary text.  A
# length-prefixed token whose prefix contains one of these would turn
# a plain "<space>https://..." into a corrupted byte sequence.
_TEXT_BYTES: frozenset[int] = frozenset(range(0x20, 0x7F)) | {0x09, 0x0A, 0x0D}


class RewriteDirection(Enum):
    """Which side of the mapping a payload is being rewritten *toward*."""

    TOWARD_ORIGIN = "toward_origin"
    TOWARD_PROXY = "toward_proxy"

    @classmethod
    def parse(cls, value: Union[str, RewriteDirection]) -> RewriteDirection:
        if isinstance(value, cls):
            return value
        normalised = str(value).strip().lower().replace("-", "_")
        for member in cls:
            if normalised in (member.value, member.name.lower(), member.value.split("_", 1)[1]):
                return member
        raise ValueError(f"Unknown rewrite direction: {value!r}")

    @property
    def opposite(self) -> RewriteDirection:
        if self is RewriteDirection.TOWARD_ORIGIN:
            return RewriteDirection.TOWARD_PROXY
        return RewriteDirection.TOWARD_ORIGIN


@dataclass(frozen=True)
class Endpoint:
    """A ``scheme://host[:port]`` triple."""

    scheme: str
    host: str
    port: Optional[int] = None

    @classmethod
    def parse(cls, url: str) -> Endpoint:
        parts = urlsplit(url.strip())
        if not parts.scheme or not parts.hostname:
            raise ValueError(f"Expected scheme://host[:port], got {url!r}")
        return cls(parts.scheme.lower(), parts.hostname.lower(), parts.port)

    @property
    def netloc(self) -> str:
        if self.port is None:
            return self.host
        return f"{self.host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"


@dataclass(frozen=True)
class TokenForm:
    """One row of the token table: an origin-side literal and its proxy-side sibling."""

    kind: str
    origin: bytes
    proxy: bytes


def encode_varint(value: int) -> bytes:
    """Base-128 varint, least significant group first."""
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        group = value & 0x7F
        value >>= 7
        if value:
            out.append(group | 0x80)
        else:
            out.append(group)
            return bytes(out)


def length_prefixed(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def _is_opaque_prefix(token: bytes) -> bool:
    prefix = encode_varint(len(token))
    return not any(b in _TEXT_BYTES for b in prefix)


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def build_token_table(
    proxy: Endpoint,
    origin: Endpoint,
    extra: Iterable[tuple[Union[str, bytes], Union[str, bytes]]] = (),
    force_length_prefixed: bool = False,
) -> tuple[TokenForm, ...]:
    """Enumerate every known literal representation of *origin* and its sibling.

    Rows are de-duplicated on both sides so the table stays a bijection,
    which is what makes ``to_proxy`` followed by ``to_origin`` the
    identity on an untouched payload.
    """
    o_url, p_url = origin.origin, proxy.origin
    rows: list[TokenForm] = [TokenForm("plain", o_url.encode(), p_url.encode())]

    rows.append(TokenForm("json_escaped", o_url.replace("/", "\\/").encode(), p_url.replace("/", "\\/").encode()))

    o_pct, p_pct = quote(o_url, safe=""), quote(p_url, safe="")
    rows.append(TokenForm("percent_encoded", o_pct.encode(), p_pct.encode()))
    rows.append(TokenForm("percent_encoded", _lower_escapes(o_pct).encode(), _lower_escapes(p_pct).encode()))

    o_raw, p_raw = o_url.encode(), p_url.encode()
    if force_length_prefixed or (_is_opaque_prefix(o_raw) and _is_opaque_prefix(p_raw)):
        rows.append(TokenForm("length_prefixed", length_prefixed(o_raw), length_prefixed(p_raw)))
    else:
        logger.debug("Skipping length-prefixed token for %s: prefix byte is printable", o_url)

    for a, b in extra:
        rows.append(TokenForm("extra", _as_bytes(a), _as_bytes(b)))

    rows.append(TokenForm("plain", origin.netloc.encode(), proxy.netloc.encode()))
    rows.append(TokenForm("plain", origin.host.encode(), proxy.host.encode()))

    seen_origin: set[bytes] = set()
    seen_proxy: set[bytes] = set()
    table: list[TokenForm] = []
    for row in rows:
        if not row.origin or not row.proxy or row.origin == row.proxy:
            continue
        if row.origin in seen_origin or row.proxy in seen_proxy:
            continue
        seen_origin.add(row.origin)
        seen_proxy.add(row.proxy)
        table.append(row)
    return tuple(table)


def _lower_escapes(value: str) -> str:
    return re.sub(r"%[0-9A-F]{2}", lambda m: m.group(0).lower(), value)


class _Substitution:
    """Single-pass multi-literal replacement.

    Longest literal first, so at any offset the most specific token
    wins (a length-prefixed URL beats the bare host inside it).  The
    output of a replacement is never re-scanned.
    """

    __slots__ = ("_pattern", "_table")

    def __init__(self, table: dict[bytes, bytes]) -> None:
        self._table = table
        if table:
            keys = sorted(table, key=len, reverse=True)
            self._pattern: Optional[re.Pattern[bytes]] = re.compile(b"|".join(re.escape(k) for k in keys))
        else:
            self._pattern = None

    def __call__(self, data: bytes) -> bytes:
        if self._pattern is None or not data:
            return data
        return self._pattern.sub(lambda m: self._table[m.group(0)], data)


class DomainMapping:
    """Static bidirectional mapping between a proxy origin and an origin.

    Examples::

        >>> m = DomainMapping("https://proxy.example", "https://origin.example")
        >>> m.to_proxy(b"fetch('https://origin.example/x')")
        b"fetch('https://proxy.example/x')"
        >>> m.to_origin(b"proxy.example")
        b'origin.example'
    """

    def __init__(
        self,
        proxy_origin: str,
        origin_origin: str,
        extra_tokens: Iterable[tuple[Union[str, bytes], Union[str, bytes]]] = (),
        force_length_prefixed: bool = False,
    ) -> None:
        self.proxy: Endpoint = Endpoint.parse(proxy_origin)
        self.origin: Endpoint = Endpoint.parse(origin_origin)
        if self.proxy == self.origin:
            raise ValueError("Proxy and origin endpoints must differ")

        self.tokens: tuple[TokenForm, ...] = build_token_table(self.proxy, self.origin, extra_tokens, force_length_prefixed)
        self._to_proxy = _Substitution({t.origin: t.proxy for t in self.tokens})
        self._to_origin = _Substitution({t.proxy: t.origin for t in self.tokens})
        logger.debug("Mapping %s <-> %s with %d token forms", self.proxy.origin, self.origin.origin, len(self.tokens))

    def __repr__(self) -> str:
        return f"DomainMapping(proxy={self.proxy.origin!r}, origin={self.origin.origin!r})"

    def to_proxy(self, data: bytes) -> bytes:
        return self._to_proxy(data)

    def to_origin(self, data: bytes) -> bytes:
        return self._to_origin(data)

    def rewrite(self, data: bytes, direction: RewriteDirection) -> bytes:
        if direction is RewriteDirection.TOWARD_PROXY:
            return self._to_proxy(data)
        return self._to_origin(data)

    def rewrite_text(self, text: str, direction: RewriteDirection) -> str:
        raw = text.encode("utf-8", "surrogateescape")
        return self.rewrite(raw, direction).decode("utf-8", "surrogateescape")

    def map_netloc(self, netloc: str, direction: RewriteDirection) -> str:
        """Swap a URL netloc when it names the other side; anything else is returned as is."""
        source, target = (self.origin, self.proxy) if direction is RewriteDirection.TOWARD_PROXY else (self.proxy, self.origin)
        lowered = netloc.lower()
        if lowered == source.netloc:
            return target.netloc
        if source.port is None and lowered == source.host:
            return target.netloc
        return netloc

    def endpoint(self, direction: RewriteDirection) -> Endpoint:
        """The endpoint a payload rewritten in *direction* points to."""
        return self.proxy if direction is RewriteDirection.TOWARD_PROXY else self.origin
