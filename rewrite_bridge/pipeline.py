"""
pipeline.py — cache → transform → rewrite, independent of the transport.

``RewriteContext`` is the explicit home of everything the sessions
share: the mapping, the body cache, the transformer, the assembler,
the optional telemetry relay and the statistics.  It is built once and
passed into every ``ResponsePipeline``/``InterceptionSession``.

Concurrency
~~~~~~~~~~~
A pipeline belongs to one event loop.  Concurrent first sight of the
same script body on that loop is coalesced through an in-flight future,
so the transform runs once and the other exchanges await its result.
Pipelines on different loops (the CDP loop and the mitmproxy thread)
only share the ``BodyCache``; a race between them costs a redundant
transform, never a wrong body, because each caller keeps its own result.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from rewrite_bridge.assembler import ResponseAssembler
from rewrite_bridge.body_cache import BodyCache, body_key
from rewrite_bridge.errors import InterceptError, RewriteFailure, TransformFailure
from rewrite_bridge.log import CustomLogger
from rewrite_bridge.mapping import DomainMapping, RewriteDirection
from rewrite_bridge.relay import TelemetryRelay
from rewrite_bridge.rewriter import BidirectionalRewriter, HeaderPatchTable
from rewrite_bridge.transformer import ContentTransformer, PassThroughTransformer, ResourceType

logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]


class ExchangeState(Enum):
    """Lifecycle of one intercepted exchange; the last three are terminal."""

    EVENT_RECEIVED = "event_received"
    BODY_FETCHED = "body_fetched"
    CACHE_CHECKED = "cache_checked"
    TRANSFORMED = "transformed"
    REWRITTEN = "rewritten"
    RESUMED = "resumed"
    RESUMED_UNMODIFIED = "resumed_unmodified"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (ExchangeState.RESUMED, ExchangeState.RESUMED_UNMODIFIED, ExchangeState.ABORTED)


class Stats:
    def __init__(self) -> None:
        self.outcomes: dict[str, int] = {}
        self.failed: dict[str, str] = {}
        self._lock = threading.Lock()

    def add_outcome(self, outcome: str) -> None:
        with self._lock:
            self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def add_failed(self, url: str, reason: str) -> None:
        with self._lock:
            self.failed[url] = reason

    def print_statistics(self) -> None:
        if self.outcomes:
            logger.info("Exchanges: %s", ", ".join(f"{k}={v}" for k, v in sorted(self.outcomes.items())))
        if self.failed:
            logger.warning("Failed exchanges:")
            for url, reason in self.failed.items():
                logger.warning("%s : %s", url, reason)


@dataclass
class RewriteContext:
    mapping: DomainMapping
    rewriter: BidirectionalRewriter
    cache: BodyCache = field(default_factory=BodyCache)
    transformer: ContentTransformer = field(default_factory=PassThroughTransformer)
    assembler: ResponseAssembler = field(default_factory=ResponseAssembler)
    relay: Optional[TelemetryRelay] = None
    relay_types: frozenset[ResourceType] = frozenset({ResourceType.SCRIPT, ResourceType.DOCUMENT})
    stats: Stats = field(default_factory=Stats)

    @classmethod
    def create(
        cls,
        proxy_origin: str,
        origin_origin: str,
        *,
        transformer: Optional[ContentTransformer] = None,
        header_rules: Optional[HeaderPatchTable] = None,
        cache: Optional[BodyCache] = None,
        assembler: Optional[ResponseAssembler] = None,
        relay: Optional[TelemetryRelay] = None,
    ) -> RewriteContext:
        mapping = DomainMapping(proxy_origin, origin_origin)
        if header_rules is None:
            header_rules = HeaderPatchTable.default(mapping)
        return cls(
            mapping=mapping,
            rewriter=BidirectionalRewriter(mapping, header_rules),
            cache=cache if cache is not None else BodyCache(),
            transformer=transformer if transformer is not None else PassThroughTransformer(),
            assembler=assembler if assembler is not None else ResponseAssembler(),
            relay=relay,
        )


@dataclass
class PipelineResult:
    body: bytes
    cache_hit: bool = False
    failure: Optional[InterceptError] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class ResponsePipeline:
    def __init__(self, context: RewriteContext) -> None:
        self.context = context
        self._inflight: dict[bytes, asyncio.Future[bytes]] = {}

    async def transform(self, raw: bytes, resource_type: ResourceType) -> tuple[bytes, bool]:
        """Return ``(transformed, cache_hit)``.

        Non-script bodies never touch the cache.  Raises whatever the
        transformer raised; nothing is cached on failure.
        """
        if resource_type is not ResourceType.SCRIPT:
            return raw, False

        cached = self.context.cache.get(raw)
        if cached is not None:
            return cached, True

        key = body_key(raw)
        pending = self._inflight.get(key)
        if pending is not None:
            try:
                return await asyncio.shield(pending), True
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if not pending.cancelled() or (task is not None and task.cancelling()):
                    raise
                # Only the computing exchange was torn down; do the work here
                logger.trace("In-flight transform abandoned, recomputing")

        fut: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            result = await asyncio.to_thread(self.context.transformer.transform, raw, resource_type)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            fut.exception()  # mark retrieved when nobody else is waiting
            raise
        else:
            self.context.cache.put(raw, result)
            fut.set_result(result)
            return result, False
        finally:
            if self._inflight.get(key) is fut:
                del self._inflight[key]

    async def process(
        self,
        raw: bytes,
        resource_type: ResourceType,
        direction: RewriteDirection,
        progress: Optional[Callable[[ExchangeState], None]] = None,
    ) -> PipelineResult:
        """Transform then rewrite *raw*.

        Fails open: on a transform or rewrite failure the result carries
        the original *raw* bytes, unchanged, together with the error.
        """
        try:
            transformed, cache_hit = await self.transform(raw, resource_type)
        except TransformFailure as e:
            logger.warning("Transform failed, keeping original body: %s", e)
            return PipelineResult(raw, False, e)
        except Exception as e:
            logger.warning("Transformer crashed, keeping original body: %s", e, exc_info=True)
            return PipelineResult(raw, False, TransformFailure(str(e)))

        if progress:
            progress(ExchangeState.CACHE_CHECKED)
            progress(ExchangeState.TRANSFORMED)

        try:
            body = self.context.rewriter.rewrite_payload(transformed, direction)
        except Exception as e:
            logger.error("Rewrite invariant violated, delivering original body: %s", e, exc_info=True)
            return PipelineResult(raw, cache_hit, RewriteFailure(str(e)))

        if progress:
            progress(ExchangeState.REWRITTEN)
        return PipelineResult(body, cache_hit)

    def publish(self, url: str, resource_type: ResourceType, body: bytes) -> None:
        relay = self.context.relay
        if relay is None or resource_type not in self.context.relay_types:
            return
        relay.publish({
            "url": url,
            "resourceType": resource_type.value,
            "body": body.decode("utf-8", "replace"),
        })
