import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..database import get_db
from ..services.reconciler import reconcile_event

router = APIRouter(tags=["webhooks"], default_response_class=ORJSONResponse)
logger = logging.getLogger(__name__)


@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    x_gateway_signature: Optional[str] = Header(default=None),
) -> Any:
    """Receive payment-gateway events.

    - Verifies the HMAC-SHA256 signature over the raw request body.
    - Duplicate and stale deliveries are acknowledged with outcome ``noop``.
    - Unknown event types are acknowledged with outcome ``ignored``.
    """
    raw = await request.body()
    # Ledger work holds row locks; keep it off the event loop
    result = await run_in_threadpool(reconcile_event, db, raw, x_gateway_signature)
    return result.to_dict()
