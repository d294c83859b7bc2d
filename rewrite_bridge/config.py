"""
config.py — INI settings with command line overrides.

Every value is resolved the same way: the command line wins when given,
otherwise the INI file, otherwise the built-in fallback.  Multi-line
INI values hold one entry per line::

    [mapping]
    proxy_origin = https://proxy.example
    origin_origin = https://origin.example
    extra_tokens =
        origin%2Eexample => proxy%2Eexample

    [transform]
    rules =
        console\\.log\\( => console.debug(

    [assembler]
    freshness =
        Cache-Control: no-store
"""

from __future__ import annotations

import argparse
import configparser
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from rewrite_bridge.assembler import DEFAULT_FRESHNESS, ResponseAssembler
from rewrite_bridge.body_cache import BodyCache
from rewrite_bridge.mapping import DomainMapping, RewriteDirection
from rewrite_bridge.pipeline import RewriteContext
from rewrite_bridge.relay import TelemetryRelay
from rewrite_bridge.rewriter import DEFAULT_PATCH_PATHS, BidirectionalRewriter, HeaderPatchTable
from rewrite_bridge.session import InterceptionPattern
from rewrite_bridge.transformer import (
    ContentTransformer,
    PassThroughTransformer,
    PatchRule,
    ResourceType,
    ScriptPatchTransformer,
)

logger = logging.getLogger(__name__)


def split_lines(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(line.strip() for line in value.splitlines() if line.strip() and not line.strip().startswith("#"))


def parse_pairs(lines: Sequence[str], sep: str) -> tuple[tuple[str, str], ...]:
    pairs: list[tuple[str, str]] = []
    for line in lines:
        left, found, right = line.partition(sep)
        if not found or not left.strip():
            raise ValueError(f"Expected 'a {sep} b', got {line!r}")
        pairs.append((left.strip(), right.strip()))
    return tuple(pairs)


def parse_resource_types(value: Optional[str]) -> tuple[ResourceType, ...]:
    if not value:
        return ()
    return tuple(ResourceType(part.strip().lower()) for part in value.replace("\n", ",").split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    proxy_origin: str
    origin_origin: str
    extra_tokens: tuple[tuple[str, str], ...] = ()
    force_length_prefixed: bool = False

    log_level: str = "DEBUG"
    mitm: bool = False
    host: str = "127.0.0.1"
    port: int = 8080

    url_patterns: tuple[str, ...] = ("*",)
    resource_types: tuple[ResourceType, ...] = (ResourceType.SCRIPT, ResourceType.DOCUMENT)
    direction: RewriteDirection = RewriteDirection.TOWARD_PROXY
    fetch_timeout: Optional[float] = None
    cdp_timeout: float = 10.0

    patch_rules: tuple[PatchRule, ...] = ()

    patch_paths: tuple[str, ...] = DEFAULT_PATCH_PATHS
    origin_literal: Optional[str] = None
    frame_header: bool = True

    cache_max_entries: Optional[int] = None
    freshness: tuple[tuple[str, str], ...] = DEFAULT_FRESHNESS

    relay_url: Optional[str] = None
    relay_queue_size: int = 256
    relay_types: tuple[ResourceType, ...] = (ResourceType.SCRIPT, ResourceType.DOCUMENT)

    @classmethod
    def from_config(cls, args: argparse.Namespace, config: configparser.ConfigParser) -> Settings:
        proxy_origin: Optional[str] = (
            args.proxy_origin
            if args.proxy_origin is not None
            else config.get("mapping", "proxy_origin", fallback=None)
        )
        origin_origin: Optional[str] = (
            args.origin_origin
            if args.origin_origin is not None
            else config.get("mapping", "origin_origin", fallback=None)
        )
        if not proxy_origin or not origin_origin:
            raise ValueError("Both [mapping] proxy_origin and origin_origin are required")

        log_level: str = (
            args.log_level
            if args.log_level is not None
            else config.get("server", "log_level", fallback="DEBUG")
        )
        mitm: bool = (
            args.mitm
            if args.mitm is not None
            else config.getboolean("server", "mitm", fallback=False)
        )
        host: str = (
            args.host
            if args.host is not None
            else config.get("server", "host", fallback="127.0.0.1")
        )
        port: int = (
            args.port
            if args.port is not None
            else config.getint("server", "port", fallback=8080)
        )

        direction = RewriteDirection.parse(
            args.direction
            if args.direction is not None
            else config.get("intercept", "direction", fallback="toward_proxy")
        )
        fetch_timeout: float = (
            args.fetch_timeout
            if args.fetch_timeout is not None
            else config.getfloat("intercept", "fetch_timeout", fallback=0)
        )
        url_patterns = split_lines(config.get("intercept", "url_patterns", fallback="*")) or ("*",)
        resource_types = parse_resource_types(config.get("intercept", "resource_types", fallback="script, document"))

        max_entries: int = config.getint("cache", "max_entries", fallback=0)

        freshness_raw: Optional[str] = config.get("assembler", "freshness", fallback=None)
        if freshness_raw is None:
            freshness = DEFAULT_FRESHNESS
        elif freshness_raw.strip().lower() in ("", "none", "off"):
            freshness = ()
        else:
            freshness = parse_pairs(split_lines(freshness_raw), ":")

        relay_url: Optional[str] = (
            args.relay
            if args.relay is not None
            else config.get("relay", "url", fallback=None)
        )

        return cls(
            proxy_origin=proxy_origin,
            origin_origin=origin_origin,
            extra_tokens=parse_pairs(split_lines(config.get("mapping", "extra_tokens", fallback=None)), "=>"),
            force_length_prefixed=config.getboolean("mapping", "force_length_prefixed", fallback=False),
            log_level=log_level,
            mitm=mitm,
            host=host,
            port=port,
            url_patterns=url_patterns,
            resource_types=resource_types,
            direction=direction,
            fetch_timeout=fetch_timeout or None,
            cdp_timeout=config.getfloat("intercept", "cdp_timeout", fallback=10.0),
            patch_rules=tuple(PatchRule.parse(line) for line in split_lines(config.get("transform", "rules", fallback=None))),
            patch_paths=split_lines(config.get("headers", "paths", fallback=None)) or DEFAULT_PATCH_PATHS,
            origin_literal=config.get("headers", "origin_literal", fallback=None) or None,
            frame_header=config.getboolean("headers", "frame_header", fallback=True),
            cache_max_entries=max_entries or None,
            freshness=freshness,
            relay_url=relay_url or None,
            relay_queue_size=config.getint("relay", "queue_size", fallback=256),
            relay_types=parse_resource_types(config.get("relay", "types", fallback="script, document")),
        )

    def patterns(self) -> tuple[InterceptionPattern, ...]:
        return tuple(
            InterceptionPattern(url_glob=glob, resource_type=rtype)
            for glob in self.url_patterns
            for rtype in self.resource_types
        )

    def transformer(self) -> ContentTransformer:
        if not self.patch_rules:
            return PassThroughTransformer()
        return ScriptPatchTransformer(self.patch_rules)

    def relay(self) -> Optional[TelemetryRelay]:
        if not self.relay_url:
            return None
        return TelemetryRelay(self.relay_url, queue_size=self.relay_queue_size)

    def build_context(self) -> RewriteContext:
        mapping = DomainMapping(
            self.proxy_origin, self.origin_origin, self.extra_tokens, force_length_prefixed=self.force_length_prefixed
        )
        header_rules = HeaderPatchTable.default(
            mapping,
            paths=self.patch_paths,
            literal=self.origin_literal,
            frame_header=self.frame_header,
        )
        context = RewriteContext(
            mapping=mapping,
            rewriter=BidirectionalRewriter(mapping, header_rules),
            cache=BodyCache(self.cache_max_entries),
            transformer=self.transformer(),
            assembler=ResponseAssembler(self.freshness),
            relay=self.relay(),
            relay_types=frozenset(self.relay_types),
        )
        logger.debug("Built %r with %d header rules", mapping, len(header_rules))
        return context


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="RewriteBridge")
    parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
    parser.add_argument('--proxy-origin', dest='proxy_origin', type=str, metavar='URL', default=None, help='Origin served to the browser, e.g. https://proxy.example')
    parser.add_argument('--origin', dest='origin_origin', type=str, metavar='URL', default=None, help='Real origin, e.g. https://origin.example')
    parser.add_argument('--direction', dest='direction', type=str, choices=['toward_proxy', 'toward_origin'], default=None, help='Rewrite direction for intercepted responses')
    parser.add_argument('--fetch-timeout', dest='fetch_timeout', type=float, metavar='SECONDS', default=None, help='Deadline for fetching an intercepted body (0 = none)')
    parser.add_argument("--mitm", dest='mitm', action=argparse.BooleanOptionalAction, default=None, help="Enable or disable the MITM proxy")
    parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Host/IP the MITM proxy binds (default: 127.0.0.1)')
    parser.add_argument('--port', dest='port', type=int, metavar='PORT', default=None, help='Port the MITM proxy listens on (default: 8080)')
    parser.add_argument('--relay', dest='relay', type=str, metavar='URL', default=None, help='WebSocket telemetry sink')
    parser.add_argument('--log-level', dest='log_level', type=str, metavar='LEVEL', default=None, help='TRACE, DEBUG, INFO, WARNING or ERROR')
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    args = build_parser().parse_args(argv)
    config = configparser.ConfigParser(interpolation=None)
    read = config.read(args.config)
    if not read:
        logger.debug("No config file at %s, using command line and defaults", args.config)
    return Settings.from_config(args, config)
