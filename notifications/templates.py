from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from booking_schemas import BookingOut

from .email import EmailMessage

TEMPLATE_DIR = Path(__file__).parent / "templates"

CURRENCY_SYMBOLS = {"jpy": "¥", "usd": "$", "eur": "€", "gbp": "£"}

# (notification type, recipient role) -> subject, headline, intro
COPY = {
    ("booking_received", "customer"): (
        "Booking received - {{ b.reference_code }}",
        "Thank you for your booking!",
        "We have received your booking request. Keep your reference code handy to track it.",
    ),
    ("booking_received", "admin"): (
        "New booking {{ b.reference_code }} from {{ b.customer_name }}",
        "New booking received",
        "A new booking was created and is waiting for payment.",
    ),
    ("booking_confirmed", "customer"): (
        "Your booking is confirmed - {{ b.reference_code }}",
        "Your booking is confirmed",
        "Great news! Your booking has been confirmed by our team.",
    ),
    ("payment_received", "customer"): (
        "{% if ctx.fully_paid %}Payment complete{% else %}Partial payment received{% endif %} - {{ b.reference_code }}",
        "{% if ctx.fully_paid %}Your booking is fully paid{% else %}Partial payment received{% endif %}",
        "We received your payment of {{ money(ctx.amount_received or 0) }}."
        "{% if not ctx.fully_paid %} The remaining balance is {{ money(b.remaining_amount) }}.{% endif %}",
    ),
    ("payment_pending", "customer"): (
        "Payment pending - {{ b.reference_code }}",
        "We are waiting for your payment",
        "Your {{ ctx.payment_method or 'bank' }} payment of {{ money(ctx.amount or 0) }} has been started. "
        "We will let you know as soon as it settles.",
    ),
    ("payment_pending", "admin"): (
        "Payment pending for {{ b.reference_code }}",
        "Delayed payment started",
        "{{ b.customer_name }} started a {{ ctx.payment_method or 'delayed' }} payment of "
        "{{ money(ctx.amount or 0) }}. No money has settled yet.",
    ),
    ("payment_failed", "customer"): (
        "Payment failed - {{ b.reference_code }}",
        "Your payment did not go through",
        "Unfortunately your payment of {{ money(ctx.amount or 0) }} failed. Your booking is still held; "
        "please try again using the link on your booking page.",
    ),
    ("payment_failed", "admin"): (
        "Payment failed for {{ b.reference_code }}",
        "Payment failed",
        "A {{ ctx.payment_method or 'delayed' }} payment of {{ money(ctx.amount or 0) }} "
        "from {{ b.customer_name }} failed.",
    ),
    ("booking_cancelled", "customer"): (
        "Booking cancelled - {{ b.reference_code }}",
        "Your booking has been cancelled",
        "Your booking has been cancelled.{% if ctx.reason %} Reason: {{ ctx.reason }}{% endif %} "
        "Contact us if you have any questions.",
    ),
    ("review_request", "customer"): (
        "How was your trip? - {{ b.reference_code }}",
        "We hope you enjoyed your trip",
        "Thank you for travelling with us. We would love to hear about your experience.",
    ),
}


class TemplateRenderer:
    """
    Renders the HTML and plain-text body of a notification from one booking
    snapshot, so both versions always describe the same state.
    """

    def __init__(self, currency: str = "jpy", site_url: str = "http://localhost:3000"):
        self.currency = currency.lower()
        self.site_url = site_url.rstrip("/")
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        self.copy_env = Environment(autoescape=False)
        self.env.globals["money"] = self.money
        self.copy_env.globals["money"] = self.money

    def money(self, amount: int) -> str:
        symbol = CURRENCY_SYMBOLS.get(self.currency)
        if symbol:
            return f"{symbol}{amount:,}"
        return f"{amount:,} {self.currency.upper()}"

    def render(self, notification_type: str, role: str, booking: BookingOut, to: str,
               context: Optional[dict] = None) -> EmailMessage:
        subject_t, headline_t, intro_t = COPY[(notification_type, role)]
        values = {"b": booking, "ctx": context or {}}
        subject = self.copy_env.from_string(subject_t).render(values)
        headline = self.copy_env.from_string(headline_t).render(values)
        intro = self.copy_env.from_string(intro_t).render(values)

        page = {
            "b": booking,
            "role": role,
            "headline": headline,
            "intro": intro,
            "show_review_link": notification_type == "review_request",
            "show_pay_link": notification_type == "payment_failed" and role == "customer",
            "site_url": self.site_url,
        }
        html = self.env.get_template("booking_email.html").render(page)
        text = self.env.get_template("booking_email.txt").render(page)
        return EmailMessage(to=to, subject=subject, html=html, text=text, role=role)
