"""Tests for raw HTTP response reconstruction."""

from __future__ import annotations

import base64

import pytest

from rewrite_bridge.assembler import ResponseAssembler, encode_envelope, reason_phrase, split_raw_response


def header_lines(raw: bytes) -> list[bytes]:
    head, _ = split_raw_response(raw)
    return head.split(b"\r\n")[1:]


class TestAssemble:
    def test_content_length_matches_body(self) -> None:
        body = "console.log('ü')".encode("utf-8")
        raw = ResponseAssembler().assemble(
            200,
            [("Content-Type", "application/javascript"), ("Content-Length", "3")],
            body,
        ).to_bytes()
        lines = header_lines(raw)
        assert b"Content-Length: %d" % len(body) in lines
        assert sum(1 for line in lines if line.lower().startswith(b"content-length:")) == 1
        assert split_raw_response(raw)[1] == body

    def test_status_line_reason_from_status(self) -> None:
        raw = ResponseAssembler().assemble(404, [], b"").to_bytes()
        assert raw.startswith(b"HTTP/1.1 404 Not Found\r\n")

    def test_status_text_wins(self) -> None:
        raw = ResponseAssembler().assemble(200, [], b"", status_text="Fine").to_bytes()
        assert raw.startswith(b"HTTP/1.1 200 Fine\r\n")

    def test_unknown_status(self) -> None:
        assert reason_phrase(599) == ""
        raw = ResponseAssembler().assemble(599, [], b"").to_bytes()
        assert raw.startswith(b"HTTP/1.1 599\r\n")

    def test_encoding_headers_dropped(self) -> None:
        raw = ResponseAssembler().assemble(
            200,
            [("Content-Encoding", "br"), ("Transfer-Encoding", "chunked"), ("Connection", "keep-alive")],
            b"x",
        ).to_bytes()
        names = {line.split(b":", 1)[0].lower() for line in header_lines(raw)}
        assert not names & {b"content-encoding", b"transfer-encoding", b"connection"}

    def test_repeatable_headers_kept(self) -> None:
        raw = ResponseAssembler(freshness=()).assemble(
            200,
            [("Set-Cookie", "a=1"), ("X-Trace", "1"), ("Set-Cookie", "b=2"), ("X-Trace", "2")],
            b"",
        )
        assert raw.headers.get_all("Set-Cookie") == ["a=1", "b=2"]
        assert raw.headers.get_all("X-Trace") == ["2"]

    def test_freshness_last_write_wins(self) -> None:
        raw = ResponseAssembler().assemble(200, [("Cache-Control", "max-age=3600")], b"")
        assert raw.headers.get_all("Cache-Control") == ["no-cache, no-store, must-revalidate"]
        assert raw.headers["Pragma"] == "no-cache"
        assert raw.headers["Expires"] == "0"

    def test_freshness_disabled(self) -> None:
        raw = ResponseAssembler(freshness=None).assemble(200, [("Cache-Control", "max-age=60")], b"")
        assert raw.headers["Cache-Control"] == "max-age=60"
        assert "Pragma" not in raw.headers

    def test_content_type_override(self) -> None:
        raw = ResponseAssembler().assemble(200, [("Content-Type", "text/plain")], b"", content_type="text/javascript")
        assert raw.headers.get_all("Content-Type") == ["text/javascript"]


class TestWireFormat:
    def test_binary_body_is_appended_verbatim(self) -> None:
        raw = ResponseAssembler().assemble(200, [("Content-Type", "image/png")], b"\x89PNG\x00\xff")
        assert base64.b64decode(raw.envelope()) == raw.to_bytes()
        assert encode_envelope(raw.to_bytes()) == raw.envelope()
        assert raw.to_bytes().endswith(b"\r\n\r\n\x89PNG\x00\xff")

    def test_content_length_property(self) -> None:
        raw = ResponseAssembler().assemble(200, [], b"12345")
        assert raw.content_length == 5

    def test_split_requires_separator(self) -> None:
        with pytest.raises(ValueError):
            split_raw_response(b"HTTP/1.1 200 OK\r\n")
