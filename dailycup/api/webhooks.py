import json

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..db import get_db
from ..errors import ValidationError
from ..webhooks import PaymentWebhookReconciler
from .deps import client_ip, get_reconciler, rate_limited

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/xendit", dependencies=[Depends(rate_limited("webhook"))])
async def xendit_callback(
    request: Request,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    reconciler: PaymentWebhookReconciler = Depends(get_reconciler),
):
    # The signature covers the exact bytes sent, so verify before parsing
    body = await request.body()
    await run_in_threadpool(reconciler.verify, body, request.headers, request.query_params.get("token"),
                            client_ip(request))
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return await run_in_threadpool(reconciler.handle, db, payload, background.add_task)
