from __future__ import annotations

import logging

from mitmproxy.http import HTTPFlow

from rewrite_bridge.mapping import RewriteDirection
from rewrite_bridge.pipeline import ExchangeState, ResponsePipeline, RewriteContext
from rewrite_bridge.transformer import ResourceType

logger = logging.getLogger(__name__)

# Request headers that carry the client-side origin back to the server
REQUEST_ORIGIN_HEADERS: tuple[str, ...] = ("Origin", "Referer")


class RewriteAddOn:
    """mitmproxy addon running the rewrite pipeline on proxied traffic.

    Requests travel against *direction* (toward the origin by default):
    URL, query values, ``Origin``/``Referer`` and the body are rewritten.
    Responses get the header patch table and, for documents and scripts,
    the full cache → transform → rewrite pipeline.

    Runs on the mitmproxy thread and loop; it shares the ``RewriteContext``
    (and therefore the body cache) with the CDP sessions but owns its
    own ``ResponsePipeline``.
    """

    def __init__(self, context: RewriteContext, direction: RewriteDirection = RewriteDirection.TOWARD_PROXY) -> None:
        self.context = context
        self.direction = direction
        self.pipeline = ResponsePipeline(context)

    def request(self, flow: HTTPFlow) -> None:
        req = flow.request
        rewriter = self.context.rewriter
        outbound = self.direction.opposite

        url = rewriter.rewrite_url(req.url, outbound)
        if url != req.url:
            logger.debug("[MITM] %s -> %s", req.url, url)
            req.url = url

        for header in REQUEST_ORIGIN_HEADERS:
            value = req.headers.get(header)
            rewritten = rewriter.rewrite_value(value, outbound)
            if rewritten != value:
                req.headers[header] = rewritten

        if req.content:
            body = rewriter.rewrite_payload(req.content, outbound)
            if body != req.content:
                req.content = body

    async def response(self, flow: HTTPFlow) -> None:
        resp = flow.response
        if resp is None:
            return
        url = flow.request.pretty_url

        self.context.rewriter.rewrite_headers(flow.request.path, resp.headers)

        resource_type = ResourceType.from_content_type(resp.headers.get("content-type"))
        if resource_type is ResourceType.OTHER:
            return
        try:
            raw = resp.content
        except ValueError as e:
            # Unknown or broken Content-Encoding, leave the response alone
            logger.warning("[MITM] Cannot decode %s: %s", url, e)
            self.context.stats.add_failed(url, str(e))
            return
        if not raw:
            return

        self.pipeline.publish(url, resource_type, raw)
        result = await self.pipeline.process(raw, resource_type, self.direction)
        if not result.ok:
            self.context.stats.add_failed(url, str(result.failure))
            self.context.stats.add_outcome(ExchangeState.RESUMED_UNMODIFIED.value)
            return

        if result.body != raw:
            resp.content = result.body
            logger.debug("[MITM] Rewrote %s %s (%d -> %d bytes)", resource_type.value, url, len(raw), len(result.body))
        self.context.stats.add_outcome(ExchangeState.RESUMED.value)
