"""Request-scoped usage accumulation.

Handlers receive a ``UsageAccumulator`` through the ``get_usage`` dependency
and record deltas on it; nothing touches the database until the middleware
flushes it after the response has gone out.
"""

from typing import Any, Awaitable, Callable, Iterable, Mapping

import structlog

from metering.billing.fields import UsageDelta

logger = structlog.get_logger()

UsageSink = Callable[[str, list[UsageDelta]], Awaitable[Any]]


class UsageAccumulator:
    """Mutable list of ``{field, value}`` deltas for one request."""

    def __init__(self, organization_id: str | None = None):
        self.organization_id = organization_id
        self._deltas: list[UsageDelta] = []
        self._flushed = False

    def record(self, fields: Iterable[UsageDelta | Mapping[str, Any]]) -> None:
        # Field names are not validated here; the ledger drops unknown ones
        for item in fields:
            if isinstance(item, UsageDelta):
                self._deltas.append(item)
            else:
                self._deltas.append(UsageDelta(field=str(item.get("field")), value=float(item.get("value") or 0)))

    def add(self, field: str, value: float) -> None:
        self._deltas.append(UsageDelta(field=str(field), value=float(value)))

    @property
    def deltas(self) -> list[UsageDelta]:
        return list(self._deltas)

    @property
    def flushed(self) -> bool:
        return self._flushed

    def __len__(self) -> int:
        return len(self._deltas)

    def claim(self) -> list[UsageDelta] | None:
        """Take the deltas exactly once. Later calls return None."""
        if self._flushed:
            return None
        self._flushed = True
        deltas, self._deltas = self._deltas, []
        return deltas

    async def flush(self, sink: UsageSink) -> bool:
        """Hand the deltas to ``sink`` at most once per request.

        Returns True when this call performed the flush.
        """
        deltas = self.claim()
        if deltas is None:
            logger.debug("usage_flush_skipped", organization_id=self.organization_id)
            return False
        if not self.organization_id or not deltas:
            return True
        await sink(self.organization_id, deltas)
        return True
