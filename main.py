import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api import admin, bookings, dispatch
from api.deps import Services
from booking_errors import BookingError
from config import Settings, configure_logging
from notifications.dispatcher import NotificationDispatcher
from notifications.email import BrevoEmailClient
from notifications.templates import TemplateRenderer
from payments.checkout import CheckoutService
from payments.gateway import StripeGateway
from payments.reconciler import PaymentReconciler
from persistence.db import Database
from txn_manager import TransactionManager
from webhooks import webhooks

logger = logging.getLogger(__name__)


def build_services(settings: Settings, gateway: Optional[StripeGateway] = None,
                   email_client: Optional[BrevoEmailClient] = None) -> Services:
    """Build the process-wide handles once; tests pass fakes for the outbound clients."""
    db = Database(settings.DATABASE_URL)
    db.init_db()

    gateway = gateway or StripeGateway(
        settings.STRIPE_API_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        currency=settings.CURRENCY,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
        backoff_seconds=settings.GATEWAY_BACKOFF_SECONDS,
    )
    email_client = email_client or BrevoEmailClient(
        settings.BREVO_API_KEY,
        settings.EMAIL_FROM,
        settings.EMAIL_FROM_NAME,
        api_url=settings.BREVO_API_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    dispatcher = NotificationDispatcher(
        db,
        email_client,
        TemplateRenderer(currency=settings.CURRENCY, site_url=settings.SITE_URL),
        admin_email=settings.ADMIN_EMAIL,
        disabled=settings.NOTIFY_DISABLED,
        max_workers=settings.NOTIFY_MAX_WORKERS,
        max_pending=settings.NOTIFY_MAX_PENDING,
        max_attempts=settings.NOTIFY_MAX_ATTEMPTS,
        backoff_seconds=settings.NOTIFY_BACKOFF_SECONDS,
    )
    transitions = TransactionManager(db, dispatcher, max_attempts=settings.TXN_MAX_ATTEMPTS)
    checkout = CheckoutService(
        db,
        gateway,
        transitions,
        dispatcher=dispatcher,
        site_url=settings.SITE_URL,
        reference_attempts=settings.REFERENCE_CODE_ATTEMPTS,
    )
    reconciler = PaymentReconciler(db, gateway, transitions)
    return Services(settings, db, dispatcher, transitions, checkout, reconciler)


def create_app(settings: Optional[Settings] = None, gateway: Optional[StripeGateway] = None,
               email_client: Optional[BrevoEmailClient] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)
    services = build_services(settings, gateway=gateway, email_client=email_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down, waiting for pending notifications")
        services.dispatcher.shutdown(wait_for_pending=True)
        services.db.dispose()

    app = FastAPI(title="Booking Engine", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.code}): {exc.message}")
        http_exc = exc.to_http_exception()
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(bookings.router)
    app.include_router(admin.router)
    app.include_router(dispatch.router)
    app.include_router(webhooks.router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
