"""Action-dispatch RPC: POST /api/billing/actions ``{"action": ..., ...params}``.

Every failure comes back as ``{"error": "<message>"}`` with a status code
(400 bad request, 401 bad service token, 404 unknown user/subscription,
409 conflict, 502/503 provider or storage trouble). The endpoint never lets
an exception escape as an unstructured crash.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from entitlements.core.auth import bearer_scheme, service_token_valid
from entitlements.core.exceptions import (
    CustomerAlreadyLinked,
    ProviderNotConfigured,
    ProviderUnavailable,
    SubscriptionNotFound,
    VersionConflict,
)
from entitlements.domain.mutations import AdminUpdate
from entitlements.domain.tiers import AcceleratorAccess, ResourceType, Tier
from entitlements.services.sync_gateway import SyncGateway

logger = structlog.get_logger(__name__)

router = APIRouter()


# ── Action parameters ───────────────────────────────────────────────


class UserParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


class UpdateSubscriptionParams(UserParams):
    tier: Tier | None = None
    accelerator_access: AcceleratorAccess | None = Field(default=None, alias="acceleratorAccess")
    cancel_at_period_end: bool | None = Field(default=None, alias="cancelAtPeriodEnd")


class CheckoutParams(UserParams):
    customer_id: str = Field(alias="customerId", min_length=1)


class HistoryParams(UserParams):
    limit: int = Field(default=50, gt=0, le=200)


class UsageParams(UserParams):
    resource_type: ResourceType = Field(alias="resourceType")
    amount: int = Field(default=1, gt=0)
    period_key: str | None = Field(default=None, alias="periodKey", pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


# ── Action handlers ─────────────────────────────────────────────────


async def _get_subscription_status(gateway: SyncGateway, params: UserParams) -> dict[str, Any]:
    view = await gateway.get_entitlement(params.user_id)
    return view.model_dump(mode="json")


async def _update_user_subscription(gateway: SyncGateway, params: UpdateSubscriptionParams) -> dict[str, Any]:
    update = AdminUpdate(
        tier=params.tier,
        accelerator_access=params.accelerator_access,
        cancel_at_period_end=params.cancel_at_period_end,
    )
    view = await gateway.admin_update(params.user_id, update)
    return {"subscription": view.model_dump(mode="json")}


async def _cancel_subscription(gateway: SyncGateway, params: UserParams) -> dict[str, Any]:
    view = await gateway.cancel_subscription(params.user_id)
    return {"subscription": view.model_dump(mode="json")}


async def _record_checkout_completed(gateway: SyncGateway, params: CheckoutParams) -> dict[str, Any]:
    view = await gateway.record_checkout_completed(params.user_id, params.customer_id)
    return {"subscription": view.model_dump(mode="json")}


async def _get_payment_history(gateway: SyncGateway, params: HistoryParams) -> dict[str, Any]:
    entries = await gateway.payment_history(params.user_id, params.limit)
    return {"payments": [entry.model_dump(mode="json") for entry in entries]}


async def _check_usage(gateway: SyncGateway, params: UsageParams) -> dict[str, Any]:
    decision = await gateway.check_usage(params.user_id, params.resource_type, params.amount, params.period_key)
    return decision.model_dump(mode="json")


ACTIONS: dict[str, tuple[type[BaseModel], Callable[[SyncGateway, Any], Awaitable[dict[str, Any]]]]] = {
    "get_subscription_status": (UserParams, _get_subscription_status),
    "update_user_subscription": (UpdateSubscriptionParams, _update_user_subscription),
    "cancel_subscription": (UserParams, _cancel_subscription),
    "record_checkout_completed": (CheckoutParams, _record_checkout_completed),
    "check_usage": (UsageParams, _check_usage),
    "get_payment_history": (HistoryParams, _get_payment_history),
}

# Exception type -> (status code, client message); first match wins
ERROR_STATUS: list[tuple[type[Exception], int, str | None]] = [
    (SubscriptionNotFound, 404, None),
    (CustomerAlreadyLinked, 409, None),
    (VersionConflict, 409, "Subscription is being updated concurrently, retry the request"),
    (ProviderNotConfigured, 503, "Payment provider is not configured"),
    (ProviderUnavailable, 502, "Payment provider is unavailable"),
    (SQLAlchemyError, 503, "Storage is unavailable"),
    (ValueError, 400, None),
]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid parameter '{location}': {first.get('msg')}" if location else str(first.get("msg"))


@router.post("/actions")
async def dispatch_action(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """Dispatch one billing action."""
    if not service_token_valid(credentials):
        return _error(401, "Invalid service token")

    try:
        payload = await request.json()
    except ValueError:
        return _error(400, "Request body must be valid JSON")
    if not isinstance(payload, dict):
        return _error(400, "Request body must be a JSON object")

    action = payload.pop("action", None)
    if not isinstance(action, str) or action not in ACTIONS:
        return _error(400, f"Unknown action: {action}")

    params_model, handler = ACTIONS[action]
    try:
        params = params_model.model_validate(payload)
    except ValidationError as exc:
        return _error(400, _validation_message(exc))

    gateway: SyncGateway = request.app.state.gateway
    log = logger.bind(action=action, user_id=params.user_id)

    try:
        result = await handler(gateway, params)
    except Exception as exc:
        for exc_type, status_code, message in ERROR_STATUS:
            if isinstance(exc, exc_type):
                log.warning("billing_action_failed", status_code=status_code, error=str(exc))
                return _error(status_code, message or str(exc))
        log.error("billing_action_crashed", error=str(exc), error_type=type(exc).__name__, exc_info=True)
        return _error(500, "Internal server error")

    log.info("billing_action_completed")
    return result
