"""Subscription endpoints for the authenticated account."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from api.dependencies import CurrentAccountDep, IdentitySettingsDep, SessionDep
from api.schemas import SubscriptionResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    account: CurrentAccountDep,
    session: SessionDep,
    identity_settings: IdentitySettingsDep,
) -> dict[str, Any]:
    """Return subscription status, billing dates and the invoice ledger.

    An expired trial has already been moved to PENDING by the access gate.
    """
    from api.services.billing_service import BillingService

    svc = BillingService(session, identity_settings)
    return await svc.get_subscription(account)
