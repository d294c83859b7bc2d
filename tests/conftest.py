"""Test configuration and fixtures for rewrite_bridge."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional, Sequence

import pytest

from rewrite_bridge.errors import FetchFailure, InvalidHandleError
from rewrite_bridge.pipeline import RewriteContext
from rewrite_bridge.session import EventCallback, InterceptedEvent, InterceptionPattern
from rewrite_bridge.transformer import ResourceType

PROXY = "https://proxy.example"
ORIGIN = "https://origin.example"


class FakeTransport:
    """In-memory ``Transport``: bodies by handle, records every resume."""

    def __init__(self) -> None:
        self.bodies: dict[str, bytes] = {}
        self.fail_fetch: set[str] = set()
        self.dead: set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.fetch_calls: list[str] = []

        self.enabled = False
        self.patterns: Optional[list[InterceptionPattern]] = None
        self.callbacks: list[EventCallback] = []
        self.resumed: list[tuple[str, Optional[bytes]]] = []
        self.aborted: list[str] = []

    async def enable(self) -> None:
        self.enabled = True

    async def set_interception(self, patterns: Sequence[InterceptionPattern]) -> None:
        self.patterns = list(patterns)

    async def on_intercepted(self, callback: EventCallback) -> None:
        self.callbacks.append(callback)

    async def off_intercepted(self, callback: EventCallback) -> None:
        self.callbacks.remove(callback)

    async def fetch_body(self, handle: str) -> tuple[bytes, bool]:
        self.fetch_calls.append(handle)
        if self.gate is not None:
            await self.gate.wait()
        if handle in self.fail_fetch:
            raise FetchFailure("No resource with given identifier found", handle)
        return self.bodies[handle], False

    async def resume(self, handle: str, raw: Optional[bytes]) -> None:
        if handle in self.dead:
            raise InvalidHandleError(f"Invalid InterceptionId {handle}", handle)
        self.resumed.append((handle, raw))

    async def abort(self, handle: str) -> None:
        if handle in self.dead:
            raise InvalidHandleError(f"Invalid InterceptionId {handle}", handle)
        self.aborted.append(handle)

    def emit(self, event: InterceptedEvent) -> None:
        for callback in list(self.callbacks):
            callback(event)

    def resumed_for(self, handle: str) -> list[Optional[bytes]]:
        return [raw for h, raw in self.resumed if h == handle]


@pytest.fixture
def context() -> RewriteContext:
    """Fresh context for origin.example <-> proxy.example."""
    return RewriteContext.create(PROXY, ORIGIN)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_event() -> Callable[..., InterceptedEvent]:
    """Factory for intercepted events with sensible defaults."""

    def factory(
        handle: str,
        url: str = f"{ORIGIN}/app.js",
        resource_type: ResourceType = ResourceType.SCRIPT,
        status_code: Optional[int] = 200,
        headers: tuple[tuple[str, str], ...] = (("Content-Type", "application/javascript"),),
        **kwargs: object,
    ) -> InterceptedEvent:
        return InterceptedEvent(
            handle=handle,
            url=url,
            resource_type=resource_type,
            status_code=status_code,
            headers=headers,
            **kwargs,  # type: ignore[arg-type]
        )

    return factory
