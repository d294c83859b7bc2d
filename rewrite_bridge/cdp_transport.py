from __future__ import annotations

import base64
import logging
from typing import Any, Optional, Sequence, TypedDict

from cdp_socket.exceptions import CDPError
from selenium_driverless.types.target import Target
from websockets.exceptions import ConnectionClosedError

from rewrite_bridge.assembler import encode_envelope
from rewrite_bridge.errors import FetchFailure, InterceptError, InvalidHandleError
from rewrite_bridge.session import (
    EventCallback,
    InterceptedEvent,
    InterceptionPattern,
    InterceptionSession,
    SessionRegistry,
)
from rewrite_bridge.transformer import ResourceType

logger = logging.getLogger(__name__)


class ChromeRequestInfo(TypedDict, total=False):
    url: str
    method: str
    headers: dict[str, str]


class ChromeInterceptedRequest(TypedDict, total=False):
    interceptionId: str
    request: ChromeRequestInfo
    frameId: str
    resourceType: str
    isNavigationRequest: bool
    isDownload: bool
    responseStatusCode: int
    responseHeaders: dict[str, str]
    responseErrorReason: str


class ChromeInterceptedBody(TypedDict):
    body: str
    base64Encoded: bool


def split_cdp_headers(headers: Optional[dict[str, str]]) -> tuple[tuple[str, str], ...]:
    # CDP folds repeated headers into one value separated by newlines
    out: list[tuple[str, str]] = []
    for name, value in (headers or {}).items():
        for part in str(value).split("\n"):
            out.append((name, part))
    return tuple(out)


def is_invalid_handle(e: CDPError) -> bool:
    code: Any = getattr(e, "code", None)
    message: str = str(getattr(e, "message", "") or e)
    return code == -32602 or "Invalid InterceptionId" in message


class CDPTransport:
    """``Transport`` over a selenium_driverless ``Target`` (one tab).

    Uses the Network domain's response interception:
    ``Network.setRequestInterception`` with ``interceptionStage:
    HeadersReceived``, ``Network.requestIntercepted`` events,
    ``Network.getResponseBodyForInterception`` and
    ``Network.continueInterceptedRequest`` with a base64 ``rawResponse``.
    """

    def __init__(self, target: Target, timeout: float = 10) -> None:
        self.target = target
        self.timeout = timeout
        self._callbacks: list[EventCallback] = []
        self._listening: bool = False

    async def _cmd(self, cmd: str, args: Optional[dict[str, Any]] = None) -> Any:
        return await self.target.execute_cdp_cmd(cmd, args, timeout=self.timeout)

    async def enable(self) -> None:
        await self._cmd("Network.enable")

    async def set_interception(self, patterns: Sequence[InterceptionPattern]) -> None:
        cdp_patterns = [p.to_cdp() for p in patterns]
        logger.debug("Network.setRequestInterception %s", cdp_patterns)
        await self._cmd("Network.setRequestInterception", {"patterns": cdp_patterns})

    async def on_intercepted(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)
        if not self._listening:
            await self.target.add_cdp_listener("Network.requestIntercepted", self._request_intercepted)
            self._listening = True

    async def off_intercepted(self, callback: EventCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass
        if self._callbacks or not self._listening:
            return
        self._listening = False
        try:
            await self._cmd("Network.setRequestInterception", {"patterns": []})
        except CDPError as e:
            logger.debug("Could not clear interception patterns: %s", e)
        try:
            await self.target.remove_cdp_listener("Network.requestIntercepted", self._request_intercepted)
        except ValueError:
            pass

    async def _request_intercepted(self, params: ChromeInterceptedRequest) -> None:
        event = self.parse_event(params)
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                # Would otherwise vanish into cdp_socket's event handler
                logger.exception("Interception callback failed for %s", event.handle)

    @staticmethod
    def parse_event(params: ChromeInterceptedRequest) -> InterceptedEvent:
        request = params.get("request", {})
        return InterceptedEvent(
            handle=params["interceptionId"],
            url=request.get("url", ""),
            resource_type=ResourceType.from_cdp(params.get("resourceType")),
            status_code=params.get("responseStatusCode"),
            headers=split_cdp_headers(params.get("responseHeaders")),
            method=request.get("method", "GET"),
            error_reason=params.get("responseErrorReason"),
        )

    def _translate(self, e: Exception, handle: str, default: type[InterceptError]) -> InterceptError:
        if isinstance(e, ConnectionClosedError):
            return InvalidHandleError(f"Tab connection closed: {e}", handle)
        if isinstance(e, CDPError) and is_invalid_handle(e):
            return InvalidHandleError(f"Invalid interception id {handle}", handle)
        return default(str(e), handle)

    async def fetch_body(self, handle: str) -> tuple[bytes, bool]:
        try:
            result: ChromeInterceptedBody = await self._cmd(
                "Network.getResponseBodyForInterception", {"interceptionId": handle}
            )
        except (CDPError, ConnectionClosedError) as e:
            raise self._translate(e, handle, FetchFailure) from e

        encoded = bool(result.get("base64Encoded"))
        body = result.get("body", "")
        return (base64.b64decode(body) if encoded else body.encode("utf-8")), encoded

    async def resume(self, handle: str, raw: Optional[bytes]) -> None:
        args: dict[str, Any] = {"interceptionId": handle}
        if raw is not None:
            args["rawResponse"] = encode_envelope(raw)
        try:
            await self._cmd("Network.continueInterceptedRequest", args)
        except (CDPError, ConnectionClosedError) as e:
            raise self._translate(e, handle, InterceptError) from e

    async def abort(self, handle: str) -> None:
        try:
            await self._cmd("Network.continueInterceptedRequest", {"interceptionId": handle, "errorReason": "Aborted"})
        except (CDPError, ConnectionClosedError) as e:
            raise self._translate(e, handle, InterceptError) from e


async def attach_target(registry: SessionRegistry, key: str, target: Target, timeout: float = 10) -> InterceptionSession:
    """Start intercepting on an already open tab."""
    return await registry.attach(key, CDPTransport(target, timeout=timeout))
