"""
Best-effort notification dispatch.

Transitions hand a booking snapshot to `dispatch`, which queues the send on a
bounded worker pool and returns immediately. Sends are retried with backoff
for transient provider errors only. Nothing raised here ever reaches the
transition that triggered it: failures are logged, written to
notification_log and surfaced as a warning string.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from contextlib import nullcontext
from typing import Dict, List, Optional, Tuple

from booking_errors import NotificationError, TransientError, with_retry
from booking_schemas import BookingOut
from persistence import crud
from persistence.db import Database
from persistence.models import NotificationLogModel

from .email import BrevoEmailClient
from .templates import TemplateRenderer

logger = logging.getLogger(__name__)

FAILURE_WARNING = "Email may have failed, check logs"

RECIPIENTS: Dict[str, Tuple[str, ...]] = {
    "booking_received": ("customer", "admin"),
    "booking_confirmed": ("customer",),
    "payment_received": ("customer",),
    "payment_pending": ("customer", "admin"),
    "payment_failed": ("customer", "admin"),
    "booking_cancelled": ("customer",),
    "review_request": ("customer",),
}

# check-then-send on notification_log is serialized per (booking, key, role)
# within this process; other processes can still race on the same key
DEDUPE_STRIPES = 64


class DispatchResult:
    def __init__(self, ok: bool = True, sent: Optional[List[str]] = None, skipped: bool = False,
                 warning: Optional[str] = None):
        self.ok = ok
        self.sent = sent or []
        self.skipped = skipped
        self.warning = warning


class DispatchHandle:
    def __init__(self, future: Future):
        self.future = future

    def result(self, timeout: Optional[float] = None) -> Optional[DispatchResult]:
        """The result, or None if the send is still running after `timeout`."""
        try:
            return self.future.result(timeout=timeout)
        except FutureTimeout:
            return None

    def warning(self, timeout: float = 0.0) -> Optional[str]:
        result = self.result(timeout)
        return result.warning if result is not None else None


def _done(result: DispatchResult) -> DispatchHandle:
    future = Future()
    future.set_result(result)
    return DispatchHandle(future)


class NotificationDispatcher:
    def __init__(self, db: Database, email_client: BrevoEmailClient, renderer: TemplateRenderer,
                 admin_email: str, disabled=frozenset(), max_workers: int = 4, max_pending: int = 100,
                 max_attempts: int = 3, backoff_seconds: float = 1.0):
        self.db = db
        self.email_client = email_client
        self.renderer = renderer
        self.admin_email = admin_email
        self.disabled = frozenset(disabled)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._slots = threading.BoundedSemaphore(max_pending)
        self._inflight = set()
        self._lock = threading.Lock()
        self._dedupe_stripes = [threading.Lock() for _ in range(DEDUPE_STRIPES)]

    def dispatch(self, booking: BookingOut, notification_type: str, context: Optional[dict] = None,
                 dedupe_key: Optional[str] = None) -> DispatchHandle:
        """Queue a send and return at once. Never raises."""
        if not self._slots.acquire(blocking=False):
            logger.error(f"Notification queue full, dropping {notification_type} for booking {booking.id}")
            return _done(DispatchResult(ok=False, warning=FAILURE_WARNING))
        try:
            future = self._executor.submit(self.send, booking, notification_type, context, dedupe_key)
        except RuntimeError as e:
            # executor already shut down
            self._slots.release()
            logger.error(f"Notification {notification_type} for booking {booking.id} not queued: {e}")
            return _done(DispatchResult(ok=False, warning=FAILURE_WARNING))
        with self._lock:
            self._inflight.add(future)
        future.add_done_callback(self._finished)
        return DispatchHandle(future)

    def dispatch_for_booking(self, booking_id: int, notification_type: str) -> DispatchHandle:
        """Load the current snapshot and dispatch. Used by the internal dispatch endpoint."""
        if notification_type not in RECIPIENTS:
            return _done(DispatchResult(ok=False, warning=f"Invalid eventType: {notification_type}"))
        with self.db.session() as session:
            booking = crud.get_booking_by_id(session, booking_id)
            if booking is None:
                return _done(DispatchResult(ok=False, warning=f"Booking {booking_id} not found"))
            snapshot = crud.model_to_pydantic(booking)
            version = booking.version
        return self.dispatch(snapshot, notification_type, dedupe_key=f"manual:{notification_type}:v{version}")

    def _finished(self, future: Future):
        with self._lock:
            self._inflight.discard(future)
        self._slots.release()

    def send(self, booking: BookingOut, notification_type: str, context: Optional[dict] = None,
             dedupe_key: Optional[str] = None) -> DispatchResult:
        """Render and deliver to every recipient of `notification_type`. Never raises."""
        try:
            return self._send(booking, notification_type, context or {}, dedupe_key)
        except Exception:
            logger.exception(f"Notification {notification_type} for booking {booking.id} crashed")
            return DispatchResult(ok=False, warning=FAILURE_WARNING)

    def _send(self, booking, notification_type, context, dedupe_key) -> DispatchResult:
        roles = RECIPIENTS.get(notification_type)
        if roles is None:
            logger.error(f"Unknown notification type {notification_type!r}")
            return DispatchResult(ok=False, warning=f"Invalid eventType: {notification_type}")
        if notification_type in self.disabled:
            logger.info(f"Email disabled for {notification_type} in settings, skipping")
            for role in roles:
                to = booking.customer_email if role == "customer" else self.admin_email
                self._log(booking.id, notification_type, role, to, dedupe_key, "skipped", 0)
            return DispatchResult(ok=True, skipped=True)

        sent, failed, skipped = [], [], []
        for role in roles:
            to = booking.customer_email if role == "customer" else self.admin_email
            with self._dedupe_lock(booking.id, dedupe_key, role):
                if dedupe_key:
                    with self.db.session() as session:
                        if crud.notification_already_sent(session, booking.id, dedupe_key, role):
                            logger.info(f"{notification_type} already sent to {role} for booking {booking.id}")
                            skipped.append(role)
                            continue

                message = self.renderer.render(notification_type, role, booking, to, context)
                attempts = 0

                def deliver():
                    nonlocal attempts
                    attempts += 1
                    return self.email_client.send(message)

                try:
                    with_retry(self.max_attempts, self.backoff_seconds)(deliver)()
                except (NotificationError, TransientError) as e:
                    logger.error(f"Failed to send {notification_type} email to {to} (booking {booking.id}): {e}")
                    failed.append(role)
                    self._log(booking.id, notification_type, role, to, dedupe_key, "failed", attempts, str(e))
                    continue
                sent.append(role)
                logger.info(f"{notification_type} email sent to {to} (booking {booking.id})")
                self._log(booking.id, notification_type, role, to, dedupe_key, "sent", attempts)

        return DispatchResult(
            ok=not failed,
            sent=sent,
            skipped=bool(skipped) and not sent and not failed,
            warning=FAILURE_WARNING if failed else None,
        )

    def _dedupe_lock(self, booking_id, dedupe_key, role):
        if not dedupe_key:
            return nullcontext()
        return self._dedupe_stripes[hash((booking_id, dedupe_key, role)) % DEDUPE_STRIPES]

    def _log(self, booking_id, notification_type, role, to, dedupe_key, status, attempts, error=None):
        try:
            with self.db.session() as session:
                session.add(NotificationLogModel(
                    booking_id=booking_id,
                    notification_type=notification_type,
                    recipient_role=role,
                    recipient=to,
                    dedupe_key=dedupe_key,
                    status=status,
                    attempts=attempts,
                    error=error,
                ))
                session.commit()
        except Exception:
            logger.exception(f"Could not record notification outcome for booking {booking_id}")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued sends. Returns False if some are still running."""
        with self._lock:
            pending = list(self._inflight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True):
        self._executor.shutdown(wait=wait_for_pending)
