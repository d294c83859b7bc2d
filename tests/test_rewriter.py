"""Tests for payload, query and header rewriting."""

from __future__ import annotations

import pytest
from mitmproxy.http import Headers

from rewrite_bridge.mapping import DomainMapping, RewriteDirection
from rewrite_bridge.rewriter import BidirectionalRewriter, HeaderPatchRule, HeaderPatchTable

PROXY = "https://proxy.example"
ORIGIN = "https://origin.example"

TO_PROXY = RewriteDirection.TOWARD_PROXY
TO_ORIGIN = RewriteDirection.TOWARD_ORIGIN


@pytest.fixture
def mapping() -> DomainMapping:
    return DomainMapping(PROXY, ORIGIN)


@pytest.fixture
def rewriter(mapping: DomainMapping) -> BidirectionalRewriter:
    return BidirectionalRewriter(mapping, HeaderPatchTable.default(mapping))


# ---------------------------------------------------------------------------
# Payload and values
# ---------------------------------------------------------------------------


class TestPayload:
    def test_script_and_document_identical(self, rewriter: BidirectionalRewriter) -> None:
        body = b"location='https://origin.example/home'"
        assert rewriter.rewrite_payload(body, TO_PROXY) == b"location='https://proxy.example/home'"

    def test_absent_value_is_noop(self, rewriter: BidirectionalRewriter) -> None:
        assert rewriter.rewrite_value(None, TO_PROXY) is None
        assert rewriter.rewrite_value("", TO_PROXY) == ""

    def test_value_without_host_unchanged(self, rewriter: BidirectionalRewriter) -> None:
        assert rewriter.rewrite_value("no hosts here", TO_PROXY) == "no hosts here"


# ---------------------------------------------------------------------------
# Query strings
# ---------------------------------------------------------------------------


class TestQuery:
    def test_every_value_of_repeated_key(self, rewriter: BidirectionalRewriter) -> None:
        query = "next=https%3A%2F%2Fproxy.example%2Fa&next=https%3A%2F%2Fproxy.example%2Fb&x=1"
        out = rewriter.rewrite_query(query, TO_ORIGIN)
        assert out == (
            "next=https%3A%2F%2Forigin.example%2Fa"
            "&next=https%3A%2F%2Forigin.example%2Fb"
            "&x=1"
        )

    def test_pairs_keep_order_and_multiplicity(self, rewriter: BidirectionalRewriter) -> None:
        pairs = [("k", "proxy.example"), ("z", "1"), ("k", "other"), ("k", "proxy.example")]
        out = rewriter.rewrite_query_pairs(pairs, TO_ORIGIN)
        assert out == [("k", "origin.example"), ("z", "1"), ("k", "other"), ("k", "origin.example")]

    def test_unchanged_query_keeps_encoding(self, rewriter: BidirectionalRewriter) -> None:
        query = "a=%7e&b=c+d"
        assert rewriter.rewrite_query(query, TO_ORIGIN) is query

    def test_blank_values_kept(self, rewriter: BidirectionalRewriter) -> None:
        out = rewriter.rewrite_query("a=&h=proxy.example", TO_ORIGIN)
        assert out == "a=&h=origin.example"

    def test_empty_query(self, rewriter: BidirectionalRewriter) -> None:
        assert rewriter.rewrite_query("", TO_ORIGIN) == ""

    def test_unrelated_segments_keep_their_bytes(self, rewriter: BidirectionalRewriter) -> None:
        out = rewriter.rewrite_query("sig=%FF%FE&u=https://origin.example/x", TO_PROXY)
        assert out == "sig=%FF%FE&u=https%3A%2F%2Fproxy.example%2Fx"

    def test_bare_keys_spaces_and_plus_survive(self, rewriter: BidirectionalRewriter) -> None:
        out = rewriter.rewrite_query("flag&q=a%20b&t=c+d&h=proxy.example+x", TO_ORIGIN)
        assert out == "flag&q=a%20b&t=c+d&h=origin.example+x"

    def test_undecodable_bytes_inside_changed_value(self, rewriter: BidirectionalRewriter) -> None:
        out = rewriter.rewrite_query("h=proxy.example%FF", TO_ORIGIN)
        assert out == "h=origin.example%FF"


class TestURL:
    def test_netloc_and_query(self, rewriter: BidirectionalRewriter) -> None:
        url = "https://proxy.example/p?r=proxy.example#frag"
        assert rewriter.rewrite_url(url, TO_ORIGIN) == "https://origin.example/p?r=origin.example#frag"

    def test_scheme_follows_endpoint(self) -> None:
        m = DomainMapping("http://localhost:8000", ORIGIN)
        r = BidirectionalRewriter(m)
        assert r.rewrite_url("http://localhost:8000/a", TO_ORIGIN) == "https://origin.example/a"
        assert r.rewrite_url("https://origin.example/a", TO_PROXY) == "http://localhost:8000/a"

    def test_foreign_url_untouched(self, rewriter: BidirectionalRewriter) -> None:
        url = "https://cdn.example/lib.js?v=1"
        assert rewriter.rewrite_url(url, TO_ORIGIN) is url


# ---------------------------------------------------------------------------
# Header patch rules
# ---------------------------------------------------------------------------


class TestHeaderPatch:
    def test_rule_rejects_other_headers(self) -> None:
        with pytest.raises(ValueError):
            HeaderPatchRule("Cookie", ("/log*",), ORIGIN)

    def test_matches_path_only(self) -> None:
        rule = HeaderPatchRule("Origin", ("/log*",), ORIGIN)
        assert rule.matches("/log?x=/")
        assert rule.matches("/logging")
        assert not rule.matches("/api/log")

    def test_origin_replaced_on_matching_path(self, rewriter: BidirectionalRewriter) -> None:
        headers = Headers(Origin="https://origin.example", Referer="https://origin.example/watch")
        changed = rewriter.rewrite_headers("/log?format=json", headers)
        assert headers["Origin"] == "https://proxy.example"
        assert headers["Referer"] == "https://proxy.example/"
        assert headers["X-Frame-Options"] == "ALLOW-FROM https://proxy.example"
        assert set(changed) == {"Origin", "Referer", "X-Frame-Options"}

    def test_playlog_glob(self, rewriter: BidirectionalRewriter) -> None:
        headers = Headers(Origin="https://origin.example")
        rewriter.rewrite_headers("/api/stats/playlog", headers)
        assert headers["Origin"] == "https://proxy.example"

    def test_absent_header_not_added(self, rewriter: BidirectionalRewriter) -> None:
        headers = Headers(content_type="text/plain")
        rewriter.rewrite_headers("/log", headers)
        assert "Origin" not in headers
        assert "Referer" not in headers

    def test_unrelated_path_untouched(self, rewriter: BidirectionalRewriter) -> None:
        headers = Headers(Origin="https://origin.example")
        assert rewriter.rewrite_headers("/index.html", headers) == []
        assert headers["Origin"] == "https://origin.example"
        assert "X-Frame-Options" not in headers

    def test_frame_header_optional(self, mapping: DomainMapping) -> None:
        table = HeaderPatchTable.default(mapping, frame_header=False)
        assert len(table) == 2
        headers = Headers()
        table.apply("/log", headers)
        assert "X-Frame-Options" not in headers

    def test_custom_paths_and_literal(self, mapping: DomainMapping) -> None:
        table = HeaderPatchTable.default(mapping, paths=("/beacon",), literal="https://origin.example/embed")
        headers = Headers(Origin="x")
        table.apply("/beacon", headers)
        assert headers["Origin"] == "https://proxy.example/embed"

    def test_no_rules(self, mapping: DomainMapping) -> None:
        r = BidirectionalRewriter(mapping)
        headers = Headers(Origin="https://origin.example")
        assert r.rewrite_headers("/log", headers) == []
