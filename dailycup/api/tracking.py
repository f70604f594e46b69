from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..auth import Principal, current_principal, require_roles
from ..config import Settings, get_settings
from ..db import get_db
from ..dispatch import CourierDispatcher
from ..orders import TERMINAL
from ..schemas import TrackingSnapshot
from ..tracking import event_stream, hub, sse
from .deps import get_dispatcher

router = APIRouter(tags=["tracking"])


@router.get("/orders/{order_number}/tracking", response_model=TrackingSnapshot)
def tracking_snapshot(
    order_number: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    return dispatcher.snapshot(db, order_number, principal)


@router.get("/orders/{order_number}/tracking/stream")
async def tracking_stream(
    order_number: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(current_principal),
    settings: Settings = Depends(get_settings),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    """Server-sent position events until the order completes or the viewer disconnects."""
    # Subscribe before reading the order so a completion in between is not lost
    sub = hub.subscribe(order_number)
    try:
        snap = await run_in_threadpool(dispatcher.snapshot, db, order_number, principal)
    except Exception:
        hub.unsubscribe(sub)
        raise
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "Connection": "keep-alive"}

    if snap["status"] in {s.value for s in TERMINAL}:
        hub.unsubscribe(sub)

        async def finished():
            yield sse("end", {"order_number": order_number, "status": snap["status"]})
        return StreamingResponse(finished(), media_type="text/event-stream", headers=headers)

    return StreamingResponse(
        event_stream(hub, order_number, request, settings.TRACKING_KEEPALIVE_SECONDS,
                     initial=snap["location"], sub=sub),
        media_type="text/event-stream",
        headers=headers,
    )


@router.get("/deliveries/active")
def active_deliveries(
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_roles("admin")),
    dispatcher: CourierDispatcher = Depends(get_dispatcher),
):
    return dispatcher.active_deliveries(db)
