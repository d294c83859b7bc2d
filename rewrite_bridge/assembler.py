"""
assembler.py — Raw HTTP response reconstruction.

Builds ``STATUS-LINE CRLF (NAME: VALUE CRLF)* CRLF BODY`` and the
base64 envelope the CDP ``rawResponse`` field expects.

The body handed to the assembler is always the *decoded* body (CDP and
mitmproxy both decompress before handing it over), so the original
``Content-Encoding``/``Transfer-Encoding`` no longer describe it and
are dropped.  ``Content-Length`` is recomputed from the final bytes.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Iterable, Optional

from mitmproxy.http import Headers

logger = logging.getLogger(__name__)

# Never copied from the original response
DROPPED_HEADERS: frozenset[str] = frozenset(
    {
        "content-length",
        "content-encoding",
        "transfer-encoding",
        "connection",
        "keep-alive",
        "proxy-connection",
        "upgrade",
    }
)

# Every occurrence is kept; all other names collapse to the last value
REPEATABLE_HEADERS: frozenset[str] = frozenset(
    {"set-cookie", "link", "vary", "via", "warning", "www-authenticate"}
)

DEFAULT_FRESHNESS: tuple[tuple[str, str], ...] = (
    ("Cache-Control", "no-cache, no-store, must-revalidate"),
    ("Pragma", "no-cache"),
    ("Expires", "0"),
)


@dataclass
class RawResponse:
    status_code: int
    reason: str
    headers: Headers
    body: bytes = b""
    http_version: str = "HTTP/1.1"

    @property
    def status_line(self) -> str:
        return f"{self.http_version} {self.status_code} {self.reason}".rstrip()

    @property
    def content_length(self) -> int:
        return int(self.headers.get("content-length", "0"))

    def head(self) -> bytes:
        lines = [self.status_line.encode("latin-1")]
        lines.extend(name + b": " + value for name, value in self.headers.fields)
        return b"\r\n".join(lines) + b"\r\n\r\n"

    def to_bytes(self) -> bytes:
        return self.head() + self.body

    def envelope(self) -> str:
        return encode_envelope(self.to_bytes())


def encode_envelope(raw: bytes) -> str:
    """Whole response, base64 encoded (binary safe)."""
    return base64.b64encode(raw).decode("ascii")


def reason_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return ""


class ResponseAssembler:
    """Turns (status, original headers, final body) into a ``RawResponse``.

    Parameters
    ----------
    freshness:
        Headers forced onto every assembled response, last-write-wins.
        Defaults to ``DEFAULT_FRESHNESS`` so the client never serves a
        stale copy of a rewritten resource from its own cache.  Pass an
        empty mapping to disable.
    """

    def __init__(self, freshness: Optional[Iterable[tuple[str, str]]] = DEFAULT_FRESHNESS) -> None:
        self.freshness: tuple[tuple[str, str], ...] = tuple(freshness or ())

    @staticmethod
    def merge(headers: Iterable[tuple[str, str]]) -> Headers:
        """Copy *headers* in order, collapsing single-valued names to their last value."""
        merged = Headers()
        for name, value in headers:
            if name.lower() in DROPPED_HEADERS:
                continue
            if name.lower() in REPEATABLE_HEADERS:
                merged.add(name, value)
            else:
                merged[name] = value
        return merged

    def assemble(
        self,
        status_code: int,
        headers: Iterable[tuple[str, str]],
        body: bytes,
        status_text: str = "",
        content_type: Optional[str] = None,
    ) -> RawResponse:
        merged = self.merge(headers)
        if content_type:
            merged["Content-Type"] = content_type
        for name, value in self.freshness:
            merged[name] = value

        merged["Content-Length"] = str(len(body))
        return RawResponse(
            status_code=status_code,
            reason=status_text or reason_phrase(status_code),
            headers=merged,
            body=body,
        )


def split_raw_response(raw: bytes) -> tuple[bytes, bytes]:
    """Split at the first blank line into (head, body)."""
    head, sep, body = raw.partition(b"\r\n\r\n")
    if not sep:
        raise ValueError("No header/body separator in raw response")
    return head, body
