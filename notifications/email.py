import logging
from typing import Optional

import httpx

from booking_errors import NotificationError, TransientError

logger = logging.getLogger(__name__)


class EmailMessage:
    def __init__(self, to: str, subject: str, html: str, text: str, role: str = "customer"):
        self.to = to
        self.subject = subject
        self.html = html
        self.text = text
        self.role = role


class BrevoEmailClient:
    """Transactional email through the Brevo HTTP API."""

    def __init__(self, api_key: Optional[str], sender_email: str, sender_name: str,
                 api_url: str = "https://api.brevo.com/v3/smtp/email", timeout: float = 10.0,
                 http: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.api_url = api_url
        self.http = http or httpx.Client(timeout=timeout)

    def send(self, message: EmailMessage) -> Optional[str]:
        """
        Deliver one message and return the provider message id.
        Raises TransientError for retryable failures, NotificationError otherwise.
        """
        if not self.api_key:
            logger.warning(f"BREVO_API_KEY not set, not sending '{message.subject}' to {message.to}")
            return None
        body = {
            "sender": {"email": self.sender_email, "name": self.sender_name},
            "to": [{"email": message.to}],
            "subject": message.subject,
            "htmlContent": message.html,
            "textContent": message.text,
        }
        try:
            response = self.http.post(self.api_url, json=body, headers={"api-key": self.api_key})
        except httpx.TransportError as e:
            raise TransientError(f"Email provider unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Email provider returned {response.status_code}")
        if response.status_code >= 400:
            raise NotificationError(
                f"Email provider rejected message ({response.status_code}): {response.text[:200]}",
                code="email_rejected",
            )
        return response.json().get("messageId") if response.content else None

    def close(self):
        self.http.close()
