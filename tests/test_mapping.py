"""Tests for the domain mapping and token codec."""

from __future__ import annotations

import pytest

from rewrite_bridge.mapping import (
    DomainMapping,
    Endpoint,
    RewriteDirection,
    build_token_table,
    encode_varint,
    length_prefixed,
)

PROXY = "https://proxy.example"
ORIGIN = "https://origin.example"


@pytest.fixture
def mapping() -> DomainMapping:
    return DomainMapping(PROXY, ORIGIN)


# ---------------------------------------------------------------------------
# Endpoints and directions
# ---------------------------------------------------------------------------


class TestEndpoint:
    def test_parse_lowercases_and_keeps_port(self) -> None:
        ep = Endpoint.parse("HTTPS://Origin.Example:8443/ignored/path")
        assert ep == Endpoint("https", "origin.example", 8443)
        assert ep.netloc == "origin.example:8443"
        assert ep.origin == "https://origin.example:8443"

    def test_parse_rejects_bare_host(self) -> None:
        with pytest.raises(ValueError):
            Endpoint.parse("origin.example")

    def test_identical_endpoints_rejected(self) -> None:
        with pytest.raises(ValueError):
            DomainMapping(ORIGIN, ORIGIN + "/")


class TestRewriteDirection:
    @pytest.mark.parametrize("value", ["toward_proxy", "TOWARD_PROXY", "proxy", "toward-proxy"])
    def test_parse_proxy_spellings(self, value: str) -> None:
        assert RewriteDirection.parse(value) is RewriteDirection.TOWARD_PROXY

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValueError):
            RewriteDirection.parse("sideways")

    def test_opposite(self) -> None:
        assert RewriteDirection.TOWARD_PROXY.opposite is RewriteDirection.TOWARD_ORIGIN
        assert RewriteDirection.TOWARD_ORIGIN.opposite is RewriteDirection.TOWARD_PROXY


# ---------------------------------------------------------------------------
# Token table
# ---------------------------------------------------------------------------


class TestTokenTable:
    def test_varint(self) -> None:
        assert encode_varint(0) == b"\x00"
        assert encode_varint(22) == b"\x16"
        assert encode_varint(300) == b"\xac\x02"

    def test_varint_negative(self) -> None:
        with pytest.raises(ValueError):
            encode_varint(-1)

    def test_kinds_present(self, mapping: DomainMapping) -> None:
        kinds = {t.kind for t in mapping.tokens}
        assert {"plain", "json_escaped", "percent_encoded", "length_prefixed"} <= kinds

    def test_table_is_a_bijection(self, mapping: DomainMapping) -> None:
        origins = [t.origin for t in mapping.tokens]
        proxies = [t.proxy for t in mapping.tokens]
        assert len(set(origins)) == len(origins)
        assert len(set(proxies)) == len(proxies)

    def test_printable_prefix_skips_length_prefixed(self) -> None:
        # 32 byte URL: its prefix would be 0x20, a space
        origin = Endpoint.parse("https://origin-host-name.example")
        assert len(origin.origin) == 32
        table = build_token_table(Endpoint.parse(PROXY), origin)
        assert all(t.kind != "length_prefixed" for t in table)

    def test_forced_length_prefixed_row(self) -> None:
        origin = "https://origin-host-name.example"
        proxy = "https://proxy-host-name.example"
        m = DomainMapping(proxy, origin, force_length_prefixed=True)
        assert any(t.kind == "length_prefixed" for t in m.tokens)
        blob = b"\x0a" + length_prefixed(origin.encode()) + b"\x10\x01"
        assert m.to_proxy(blob) == b"\x0a" + length_prefixed(proxy.encode()) + b"\x10\x01"

    def test_extra_tokens(self) -> None:
        m = DomainMapping(PROXY, ORIGIN, extra_tokens=[("origin%2Eexample", "proxy%2Eexample")])
        assert m.to_proxy(b"h=origin%2Eexample") == b"h=proxy%2Eexample"
        assert m.to_origin(b"h=proxy%2Eexample") == b"h=origin%2Eexample"


# ---------------------------------------------------------------------------
# Payload rewriting
# ---------------------------------------------------------------------------


class TestRewrite:
    def test_plain_url(self, mapping: DomainMapping) -> None:
        assert mapping.to_proxy(b"fetch('https://origin.example/x')") == b"fetch('https://proxy.example/x')"

    def test_bare_host(self, mapping: DomainMapping) -> None:
        assert mapping.to_proxy(b'{"host":"origin.example"}') == b'{"host":"proxy.example"}'

    def test_json_escaped(self, mapping: DomainMapping) -> None:
        assert mapping.to_proxy(b'"https:\\/\\/origin.example\\/a"') == b'"https:\\/\\/proxy.example\\/a"'

    def test_percent_encoded_both_cases(self, mapping: DomainMapping) -> None:
        assert mapping.to_proxy(b"u=https%3A%2F%2Forigin.example") == b"u=https%3A%2F%2Fproxy.example"
        assert mapping.to_proxy(b"u=https%3a%2f%2forigin.example") == b"u=https%3a%2f%2fproxy.example"

    def test_length_prefixed_prefix_follows_the_sibling(self, mapping: DomainMapping) -> None:
        blob = b"\x0a" + length_prefixed(ORIGIN.encode()) + b"\x10\x01"
        out = mapping.to_proxy(blob)
        assert out == b"\x0a" + length_prefixed(PROXY.encode()) + b"\x10\x01"

    def test_no_cascade(self) -> None:
        # Output of one replacement is never re-scanned
        m = DomainMapping("https://origin.example.net", "https://origin.example")
        assert m.to_proxy(b"https://origin.example/") == b"https://origin.example.net/"

    def test_unrelated_payload_unchanged(self, mapping: DomainMapping) -> None:
        data = b"\x00\xffbinary https://elsewhere.example"
        assert mapping.to_proxy(data) == data

    def test_empty(self, mapping: DomainMapping) -> None:
        assert mapping.to_proxy(b"") == b""

    def test_round_trip(self, mapping: DomainMapping) -> None:
        body = (
            b"<a href='https://origin.example/p?q=1'>origin.example</a>"
            b'<script>var u="https:\\/\\/origin.example";</script>'
        )
        forward = mapping.rewrite(body, RewriteDirection.TOWARD_PROXY)
        assert b"origin.example" not in forward
        assert mapping.rewrite(forward, RewriteDirection.TOWARD_ORIGIN) == body

    def test_rewrite_text_keeps_invalid_utf8(self, mapping: DomainMapping) -> None:
        text = b"\xff origin.example".decode("utf-8", "surrogateescape")
        out = mapping.rewrite_text(text, RewriteDirection.TOWARD_PROXY)
        assert out.encode("utf-8", "surrogateescape") == b"\xff proxy.example"


class TestNetloc:
    def test_map_netloc(self, mapping: DomainMapping) -> None:
        assert mapping.map_netloc("origin.example", RewriteDirection.TOWARD_PROXY) == "proxy.example"
        assert mapping.map_netloc("PROXY.example", RewriteDirection.TOWARD_ORIGIN) == "origin.example"

    def test_foreign_netloc_untouched(self, mapping: DomainMapping) -> None:
        assert mapping.map_netloc("cdn.example", RewriteDirection.TOWARD_PROXY) == "cdn.example"
