"""FastAPI dependency injection."""

from fastapi import Depends, HTTPException, Header, Request, status

from metering.billing.accumulator import UsageAccumulator
from metering.billing.exceptions import OwnerOnlyError
from metering.config import get_settings


async def get_organization_id(
    x_organization_id: str | None = Header(None, alias="X-Organization-ID"),
) -> str:
    """Tenant of the request, set by the upstream auth gateway."""
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing organisation context",
        )
    return x_organization_id


def get_usage(request: Request) -> UsageAccumulator:
    """The request's usage accumulator, created by UsageTrackingMiddleware."""
    usage = getattr(request.state, "usage", None)
    if usage is None:
        # Middleware disabled; record into a throwaway accumulator
        usage = UsageAccumulator(request.headers.get("X-Organization-ID"))
        request.state.usage = usage
    return usage


class OwnerAccess:
    """Dependency that restricts an endpoint to the platform owner."""

    def __init__(self, action: str):
        self.action = action

    async def __call__(self, organization_id: str = Depends(get_organization_id)) -> str:
        if organization_id != get_settings().PLATFORM_OWNER_ORG_ID:
            raise OwnerOnlyError(self.action)
        return organization_id


require_owner_billing_run = OwnerAccess("run billing")
require_owner_aggregate = OwnerAccess("build usage aggregates")
require_owner_payment = OwnerAccess("update payment status")
