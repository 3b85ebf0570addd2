from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.deps import Services, get_services
from booking_errors import SignatureError

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/payment")
async def payment_webhook(request: Request, stripe_signature: str = Header(None),
                          services: Services = Depends(get_services)):
    """
    Stripe event receiver. Answers 200 once the event is recorded, whatever the
    outcome, so Stripe stops retrying. A bad signature is a 400 and an
    unavailable database a 503 (via the BookingError handler).
    """
    payload = await request.body()
    sig_header = stripe_signature or request.headers.get("stripe-signature")
    try:
        # blocking: database transaction with row locks
        outcome = await run_in_threadpool(services.reconciler.handle, payload, sig_header)
    except SignatureError as e:
        return JSONResponse(status_code=400, content={"error": e.message, "code": e.code})
    return JSONResponse(content=outcome.as_dict())
