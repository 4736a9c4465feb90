"""Payment-gateway webhook receiver.

The gateway posts ``{event, payment_id, customer_email, amount, status,
reason, metadata}``.  The raw body is authenticated with HMAC-SHA256
(``X-Webhook-Signature: sha256=<hex>``) before it is parsed.  This endpoint
does not use Bearer authentication.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from identity_core.subscription.events import PaymentEvent
from pydantic import ValidationError

from api.config import PlatformEnv
from api.dependencies import IdentitySettingsDep, SessionDep, SettingsDep
from api.schemas import WebhookResult
from api.security import verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_SIGNATURE_HEADER = "x-webhook-signature"

# Rejections that map to a status other than 200.
_REJECTION_STATUS: dict[str, int] = {
    "unknown_subject": 404,
    "missing_payment_id": 400,
}


@router.post("/payments", response_model=WebhookResult)
async def payment_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    identity_settings: IdentitySettingsDep,
) -> Any:
    """Apply a payment event to the account owning ``customer_email``.

    Replays of an already-recorded payment return 200 with
    ``status="noop"`` so the gateway stops retrying.
    """
    from api.services.billing_service import BillingService

    # The signature MUST be verified BEFORE any parsing.
    body = await request.body()
    secret = settings.payment_webhook_secret.get_secret_value()
    if secret:
        if not verify_webhook_signature(body, request.headers.get(_SIGNATURE_HEADER), secret):
            logger.warning("Rejected payment webhook with invalid signature")
            raise HTTPException(status_code=403, detail="Invalid webhook signature")
    elif settings.platform_env == PlatformEnv.DEV:
        logger.warning("API_PAYMENT_WEBHOOK_SECRET is not set; accepting unsigned payment webhook (dev only)")
    else:
        logger.error("Payment webhook received but no webhook secret is configured")
        raise HTTPException(status_code=403, detail="Webhook signature verification is not configured")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    try:
        event = PaymentEvent.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid payment event") from exc

    svc = BillingService(session, identity_settings)
    result = await svc.handle_subscription_event(event)

    if result["status"] == "rejected":
        status_code = _REJECTION_STATUS.get(result.get("reason", ""), 400)
        return JSONResponse(status_code=status_code, content=result)
    return result
