from fastapi import APIRouter, Depends, Query, Request

from entitlements.core.auth import require_service_token
from entitlements.services.usage_ledger import UsageLedger, UsageSnapshot

router = APIRouter()


@router.get("/{user_id}", response_model=UsageSnapshot, dependencies=[Depends(require_service_token)])
async def get_usage(
    user_id: str,
    request: Request,
    period_key: str | None = Query(default=None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
) -> UsageSnapshot:
    """Current-period usage per resource type, against the user's current limits.

    Read-only: unlike the ``check_usage`` action it never consumes quota.
    """
    ledger: UsageLedger = request.app.state.ledger
    return await ledger.get_usage(user_id, period_key)
