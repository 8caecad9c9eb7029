from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..payment_gateway import StripeGateway, get_payment_gateway

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/payments", response_model=schemas.WebhookAck)
async def payment_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None),
        db: Session = Depends(get_db),
        gateway: StripeGateway = Depends(get_payment_gateway),
):
    """
    Receives Stripe events. Redelivery of an already processed event is
    acknowledged without doing anything.
    """
    # The signature covers the exact bytes, so read the raw body.
    payload = await request.body()
    result = await run_in_threadpool(gateway.handle_webhook, db, payload, stripe_signature)
    return schemas.WebhookAck(duplicate=result.duplicate)
