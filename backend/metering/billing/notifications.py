"""Out-of-band notifications to the platform owner.

Best-effort only: a failed notification is logged and never raised.
"""

import asyncio

import httpx
import structlog

from metering.config import get_settings

logger = structlog.get_logger()

_pending: set[asyncio.Task] = set()


async def send_owner_notification(subject: str, message: str, **context) -> bool:
    settings = get_settings()
    logger.warning("owner_notification", subject=subject, message=message, **context)

    if not settings.OWNER_NOTIFY_WEBHOOK:
        return False

    payload = {"subject": subject, "message": message, "context": {k: str(v) for k, v in context.items()}}
    try:
        async with httpx.AsyncClient(timeout=settings.OWNER_NOTIFY_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.OWNER_NOTIFY_WEBHOOK, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("owner_notification_failed", subject=subject, error=str(e))
        return False
    return True


def notify_owner(subject: str, message: str, **context) -> asyncio.Task:
    """Schedule a notification without waiting for it."""
    task = asyncio.create_task(send_owner_notification(subject, message, **context))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_notifications() -> None:
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
