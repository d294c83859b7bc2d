"""
session.py — Per-tab interception state machine.

An ``InterceptionSession`` owns one transport (one tab/connection).  It
registers URL/resource-type patterns at the *headers received* stage
and turns every intercepted event into an independent task keyed by
the event's opaque handle::

    EVENT_RECEIVED → BODY_FETCHED → CACHE_CHECKED → TRANSFORMED
        → REWRITTEN → RESUMED
    any failure    → RESUMED_UNMODIFIED
    explicit abort → ABORTED

A slow exchange never holds up another one: the transform runs off the
event loop and nothing but the body cache is shared between tasks.

Handles are single use.  A second resume/abort of the same handle is a
protocol violation and raises ``DoubleResumeError``; it is recorded for
that exchange only and never takes the session down.  After ``close()``
in-flight work is abandoned and no handle is resumed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Optional, Protocol, Sequence
from urllib.parse import urlsplit

from rewrite_bridge.assembler import RawResponse
from rewrite_bridge.errors import DoubleResumeError, FetchFailure, InterceptError, InvalidHandleError
from rewrite_bridge.log import CustomLogger
from rewrite_bridge.mapping import RewriteDirection
from rewrite_bridge.pipeline import ExchangeState, ResponsePipeline, RewriteContext
from rewrite_bridge.transformer import ResourceType

logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]

HEADERS_RECEIVED: str = "HeadersReceived"

# Statuses whose response carries no body worth rewriting
_NO_BODY_STATUSES: frozenset[int] = frozenset({204, 205, 304})

# Finished handles remembered per session for double-resume detection
DEFAULT_HISTORY: int = 1024


# ============================================================================
# Transport boundary
# ============================================================================


@dataclass(frozen=True)
class InterceptionPattern:
    url_glob: str = "*"
    resource_type: Optional[ResourceType] = None
    stage: str = HEADERS_RECEIVED

    def to_cdp(self) -> dict[str, str]:
        pattern: dict[str, str] = {"urlPattern": self.url_glob, "interceptionStage": self.stage}
        if self.resource_type is not None:
            pattern["resourceType"] = self.resource_type.cdp_name
        return pattern


DEFAULT_PATTERNS: tuple[InterceptionPattern, ...] = (
    InterceptionPattern("*", ResourceType.SCRIPT),
    InterceptionPattern("*", ResourceType.DOCUMENT),
)


@dataclass(frozen=True)
class InterceptedEvent:
    """What the transport hands over when a response is paused."""

    handle: str
    url: str
    resource_type: ResourceType
    status_code: Optional[int] = None
    headers: tuple[tuple[str, str], ...] = ()
    status_text: str = ""
    method: str = "GET"
    error_reason: Optional[str] = None


EventCallback = Callable[[InterceptedEvent], None]


class Transport(Protocol):
    async def enable(self) -> None: ...

    async def set_interception(self, patterns: Sequence[InterceptionPattern]) -> None: ...

    async def on_intercepted(self, callback: EventCallback) -> None: ...

    async def off_intercepted(self, callback: EventCallback) -> None: ...

    async def fetch_body(self, handle: str) -> tuple[bytes, bool]: ...

    async def resume(self, handle: str, raw: Optional[bytes]) -> None: ...

    async def abort(self, handle: str) -> None: ...


# ============================================================================
# Exchange
# ============================================================================


@dataclass
class InterceptedExchange:
    handle: str
    url: str
    resource_type: ResourceType
    status_code: Optional[int]
    headers: list[tuple[str, str]]
    status_text: str = ""
    method: str = "GET"
    error_reason: Optional[str] = None
    body: Optional[bytes] = None
    base64_encoded: bool = False
    state: ExchangeState = ExchangeState.EVENT_RECEIVED
    history: list[ExchangeState] = field(default_factory=lambda: [ExchangeState.EVENT_RECEIVED])

    @classmethod
    def from_event(cls, event: InterceptedEvent) -> InterceptedExchange:
        return cls(
            handle=event.handle,
            url=event.url,
            resource_type=event.resource_type,
            status_code=event.status_code,
            headers=list(event.headers),
            status_text=event.status_text,
            method=event.method,
            error_reason=event.error_reason,
        )

    def advance(self, state: ExchangeState) -> None:
        self.state = state
        self.history.append(state)

    @property
    def path(self) -> str:
        parts = urlsplit(self.url)
        return f"{parts.path or '/'}?{parts.query}" if parts.query else (parts.path or "/")

    @property
    def content_type(self) -> Optional[str]:
        """Content-Type to force on the rebuilt response, if the original had none."""
        if any(name.lower() == "content-type" for name, _ in self.headers):
            return None
        return self.resource_type.default_content_type

    @property
    def has_body(self) -> bool:
        """``False`` for redirects, transport errors, HEAD and body-less statuses."""
        if self.error_reason or self.status_code is None:
            return False
        if 300 <= self.status_code < 400 or self.status_code in _NO_BODY_STATUSES:
            return False
        return self.method.upper() != "HEAD"


# ============================================================================
# Session
# ============================================================================


class SessionState(Enum):
    CREATED = "created"
    REGISTERED = "registered"
    CLOSED = "closed"


class InterceptionSession:
    """Drives every intercepted exchange of one transport.

    Parameters
    ----------
    transport:
        The tab/connection adapter (see ``Transport``).
    context:
        Shared ``RewriteContext``.
    direction:
        ``TOWARD_PROXY`` when the session observes responses coming from
        the origin, ``TOWARD_ORIGIN`` for the opposite flow.
    patterns:
        Interception patterns installed on ``start()``.
    fetch_timeout:
        Optional deadline for one body fetch (seconds).  ``None`` leaves
        it to the transport.
    pipeline:
        Share a pipeline between sessions of the same loop so in-flight
        transforms are coalesced across tabs.
    history_limit:
        How many finished handles, outcomes and errors are remembered.
        Older entries are dropped; totals live in ``Stats``.
    """

    def __init__(
        self,
        transport: Transport,
        context: RewriteContext,
        *,
        direction: RewriteDirection = RewriteDirection.TOWARD_PROXY,
        patterns: Sequence[InterceptionPattern] = DEFAULT_PATTERNS,
        fetch_timeout: Optional[float] = None,
        pipeline: Optional[ResponsePipeline] = None,
        name: str = "session",
        history_limit: int = DEFAULT_HISTORY,
    ) -> None:
        self.transport = transport
        self.context = context
        self.direction = direction
        self.patterns: tuple[InterceptionPattern, ...] = tuple(patterns)
        self.fetch_timeout = fetch_timeout
        self.pipeline = pipeline if pipeline is not None else ResponsePipeline(context)
        self.name = name

        self.state: SessionState = SessionState.CREATED
        self.exchanges: dict[str, InterceptedExchange] = {}
        self.history_limit = history_limit
        self.errors: deque[tuple[str, InterceptError]] = deque(maxlen=history_limit)
        self.outcomes: OrderedDict[str, ExchangeState] = OrderedDict()
        self._consumed: OrderedDict[str, None] = OrderedDict()
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def __repr__(self) -> str:
        return f"<InterceptionSession {self.name} {self.state.value} in_flight={len(self._tasks)}>"

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self.state is not SessionState.CREATED:
            raise RuntimeError(f"Session {self.name} already {self.state.value}")
        await self.transport.enable()
        await self.transport.on_intercepted(self._on_intercepted)
        await self.transport.set_interception(self.patterns)
        self.state = SessionState.REGISTERED
        logger.info("[%s] Intercepting %d pattern(s), %s", self.name, len(self.patterns), self.direction.value)

    async def close(self) -> None:
        """Abandon in-flight exchanges and stop listening.  Safe to call twice."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug("[%s] Abandoned %d in-flight exchange(s)", self.name, len(tasks))

        try:
            await self.transport.off_intercepted(self._on_intercepted)
        except Exception as e:
            # The tab is usually already gone at this point
            logger.debug("[%s] Could not remove listener: %s", self.name, e)
        logger.info("[%s] Session closed", self.name)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # -- event dispatch ----------------------------------------------------

    def _on_intercepted(self, event: InterceptedEvent) -> None:
        if self.state is not SessionState.REGISTERED:
            logger.debug("[%s] Ignoring %s, session %s", self.name, event.handle, self.state.value)
            return

        if event.handle in self._tasks or event.handle in self._consumed:
            error = DoubleResumeError(f"Handle {event.handle} delivered twice", event.handle)
            logger.error("[%s] %s", self.name, error)
            self.errors.append((event.handle, error))
            return

        exchange = InterceptedExchange.from_event(event)
        self.exchanges[event.handle] = exchange
        task = asyncio.create_task(self._run(exchange), name=f"exchange-{event.handle}")
        self._tasks[event.handle] = task
        task.add_done_callback(partial(self._exchange_done, event.handle))

    def _exchange_done(self, handle: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(handle, None)
        self.exchanges.pop(handle, None)
        if task.cancelled():
            logger.trace("[%s] Exchange %s cancelled", self.name, handle)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[%s] Exchange %s failed: %r", self.name, handle, exc)

    async def _run(self, exchange: InterceptedExchange) -> None:
        try:
            await self.handle(exchange)
        except DoubleResumeError as e:
            logger.error("[%s] %s", self.name, e)
            self.errors.append((exchange.handle, e))
        except InvalidHandleError as e:
            logger.debug("[%s] Handle %s is gone: %s", self.name, exchange.handle, e)
            self.context.stats.add_outcome("handle_gone")

    # -- pipeline ----------------------------------------------------------

    async def handle(self, exchange: InterceptedExchange) -> ExchangeState:
        """Run one exchange to a terminal state."""
        if not exchange.has_body:
            logger.trace("[%s] Pass-through %s (%s)", self.name, exchange.url, exchange.status_code)
            await self._resume_exchange(exchange, None, ExchangeState.RESUMED_UNMODIFIED)
            return exchange.state

        try:
            body = await self._fetch(exchange)
        except FetchFailure as e:
            logger.warning("[%s] Could not fetch body of %s: %s", self.name, exchange.url, e)
            self.context.stats.add_failed(exchange.url, str(e))
            await self._resume_exchange(exchange, None, ExchangeState.RESUMED_UNMODIFIED)
            return exchange.state

        exchange.body = body
        exchange.advance(ExchangeState.BODY_FETCHED)
        self.pipeline.publish(exchange.url, exchange.resource_type, body)

        result = await self.pipeline.process(body, exchange.resource_type, self.direction, progress=exchange.advance)
        raw = self.context.assembler.assemble(
            exchange.status_code or 200,
            exchange.headers,
            result.body,
            status_text=exchange.status_text,
            content_type=exchange.content_type,
        )

        if not result.ok:
            self.context.stats.add_failed(exchange.url, str(result.failure))
            await self._resume_exchange(exchange, raw, ExchangeState.RESUMED_UNMODIFIED)
            return exchange.state

        self.context.rewriter.rewrite_headers(exchange.path, raw.headers)
        logger.debug(
            "[%s] %s %s: %d -> %d bytes%s",
            self.name, exchange.resource_type.value, exchange.url, len(body), len(result.body),
            " (cached)" if result.cache_hit else "",
        )
        await self._resume_exchange(exchange, raw, ExchangeState.RESUMED)
        return exchange.state

    async def _fetch(self, exchange: InterceptedExchange) -> bytes:
        try:
            if self.fetch_timeout:
                async with asyncio.timeout(self.fetch_timeout):
                    body, encoded = await self.transport.fetch_body(exchange.handle)
            else:
                body, encoded = await self.transport.fetch_body(exchange.handle)
        except TimeoutError:
            raise FetchFailure(f"Timed out after {self.fetch_timeout}s", exchange.handle) from None
        except InvalidHandleError as e:
            raise FetchFailure(str(e), exchange.handle) from e
        exchange.base64_encoded = encoded
        return body

    # -- resume / abort ----------------------------------------------------

    def _consume(self, handle: str) -> bool:
        """Claim *handle* for its single resume.  ``False`` once the session is closed."""
        if handle in self._consumed:
            raise DoubleResumeError(f"Handle {handle} already resumed", handle)
        if self.state is SessionState.CLOSED:
            logger.debug("[%s] Not resuming %s, session closed", self.name, handle)
            return False
        self._remember(self._consumed, handle, None)
        return True

    def _remember(self, store: OrderedDict, key: str, value: object) -> None:
        store[key] = value
        while len(store) > self.history_limit:
            store.popitem(last=False)

    def _record(self, handle: str, outcome: ExchangeState, exchange: Optional[InterceptedExchange] = None) -> None:
        exchange = exchange or self.exchanges.get(handle)
        if exchange is not None:
            exchange.advance(outcome)
        self._remember(self.outcomes, handle, outcome)
        self.context.stats.add_outcome(outcome.value)

    async def _resume_exchange(
        self, exchange: InterceptedExchange, raw: Optional[RawResponse], outcome: ExchangeState
    ) -> None:
        if not self._consume(exchange.handle):
            return
        await self.transport.resume(exchange.handle, raw.to_bytes() if raw is not None else None)
        self._record(exchange.handle, outcome, exchange)

    async def resume(self, handle: str, raw: Optional[bytes]) -> None:
        """Resume *handle* with *raw* (``None`` = unmodified)."""
        if not self._consume(handle):
            return
        await self.transport.resume(handle, raw)
        self._record(handle, ExchangeState.RESUMED if raw is not None else ExchangeState.RESUMED_UNMODIFIED)

    async def abort(self, handle: str) -> None:
        if not self._consume(handle):
            return
        await self.transport.abort(handle)
        self._record(handle, ExchangeState.ABORTED)


# ============================================================================
# Registry
# ============================================================================


class SessionRegistry:
    """All live sessions of one event loop, keyed by tab/connection id.

    Sessions share one ``ResponsePipeline`` so the in-flight transform
    coalescing spans tabs.
    """

    def __init__(
        self,
        context: RewriteContext,
        *,
        direction: RewriteDirection = RewriteDirection.TOWARD_PROXY,
        patterns: Sequence[InterceptionPattern] = DEFAULT_PATTERNS,
        fetch_timeout: Optional[float] = None,
    ) -> None:
        self.context = context
        self.direction = direction
        self.patterns = tuple(patterns)
        self.fetch_timeout = fetch_timeout
        self.pipeline = ResponsePipeline(context)
        self._sessions: dict[str, InterceptionSession] = {}
        self._lock = asyncio.Lock()

    async def attach(self, key: str, transport: Transport) -> InterceptionSession:
        async with self._lock:
            if key in self._sessions:
                raise KeyError(f"Session {key!r} already attached")
            session = InterceptionSession(
                transport,
                self.context,
                direction=self.direction,
                patterns=self.patterns,
                fetch_timeout=self.fetch_timeout,
                pipeline=self.pipeline,
                name=key,
            )
            await session.start()
            self._sessions[key] = session
            return session

    async def detach(self, key: str) -> None:
        async with self._lock:
            session = self._sessions.pop(key, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)

    def get(self, key: str) -> Optional[InterceptionSession]:
        return self._sessions.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
