"""Payment processor webhook route."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from billing_engine.api.deps import get_db, get_synchronizer
from billing_engine.services.billing.webhooks import (
    InvalidWebhookPayload,
    StateSynchronizer,
    WebhookRetryableError,
)
from billing_engine.services.payment_gateway import GatewayNotConfigured, InvalidSignatureError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    synchronizer: StateSynchronizer = Depends(get_synchronizer),
) -> dict:
    """Handle processor events. No auth; the signature header is verified instead.

    A 503 asks the processor to redeliver later. Events that fail permanently
    are recorded and acknowledged with 200 so they are not redelivered.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        outcome = await run_in_threadpool(synchronizer.handle, db, body, signature)
    except GatewayNotConfigured as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "webhook_not_configured", "message": str(exc)},
        ) from exc
    except InvalidSignatureError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_signature", "message": "Invalid signature"},
        ) from exc
    except InvalidWebhookPayload as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_payload", "message": str(exc)},
        ) from exc
    except WebhookRetryableError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "retry_later", "message": str(exc)},
        ) from exc
    return {"received": True, "status": outcome}
