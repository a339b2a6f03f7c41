"""Usage tracking middleware - request-level metering.

Pure ASGI so the flush can be scheduled after the last body chunk has been
sent, and still happens when the client disconnects mid-response.
"""

import time

import structlog
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from metering.billing.accumulator import UsageAccumulator
from metering.billing.fields import GIGABYTE, MeteredField
from metering.billing.pipeline import BillingFlusher, flusher as default_flusher
from metering.config import get_settings

logger = structlog.get_logger()

# Paths that are never metered
_UNMETERED_PATHS = {"/health", "/api/v1/status", "/favicon.ico"}


class UsageTrackingMiddleware:
    """
    Middleware that meters each tenant request:
    - bandwidth from the response body size
    - compute seconds from wall-clock time
    - whatever handlers recorded on the request's accumulator
    Only active when BILLING_ENABLED=true.
    """

    def __init__(self, app: ASGIApp, flusher: BillingFlusher | None = None):
        self.app = app
        self.flusher = flusher or default_flusher

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        settings = get_settings()
        if scope["type"] != "http" or not settings.BILLING_ENABLED or scope["path"] in _UNMETERED_PATHS:
            await self.app(scope, receive, send)
            return

        usage = UsageAccumulator(Headers(scope=scope).get("x-organization-id"))
        scope.setdefault("state", {})["usage"] = usage

        start = time.monotonic()
        body_bytes = 0
        finished = False

        def finish() -> None:
            nonlocal finished
            if finished:
                return
            finished = True
            if usage.organization_id is None:
                return
            usage.record([
                {"field": MeteredField.BANDWIDTH, "value": body_bytes / GIGABYTE},
                {"field": MeteredField.COMPUTE_SECONDS, "value": time.monotonic() - start + settings.COMPUTE_SECONDS_FLOOR},
            ])
            self.flusher.schedule(usage)

        async def send_wrapper(message: Message) -> None:
            nonlocal body_bytes
            if message["type"] == "http.response.body":
                body_bytes += len(message.get("body", b""))
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                finish()

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            # Aborted or failed before the last body chunk
            if not finished:
                logger.debug("usage_flush_on_close", path=scope["path"])
                finish()
