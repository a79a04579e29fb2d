"""
Jinja2 rendering for email bodies and subjects.
"""

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from quotedesk.config import settings

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)

SUBJECTS = {
    "quote_ready": "Your translation quote {{ quote_number }} is ready",
    "payment_requested": "Quote {{ quote_number }} approved: complete your order",
    "review_required": "[Staff] Quote {{ quote_number }} needs review",
    "better_scan_requested": "Action needed: clearer copy required for quote {{ quote_number }}",
    "quote_rejected": "Update on your quote {{ quote_number }}",
    "quote_updated": "Your quote {{ quote_number }} has been updated",
    "order_cancelled": "Order {{ order_number }} has been cancelled",
}


def base_context() -> dict:
    return {
        "company_name": settings.EMAIL_SENDER_NAME,
        "support_email": settings.SUPPORT_EMAIL,
        "site_url": settings.PUBLIC_SITE_URL.rstrip("/"),
        "currency": settings.CURRENCY,
    }


def render(event: str, context: dict) -> tuple[str, str]:
    """Return (subject, html) for an event."""
    merged = {**base_context(), **context}
    subject = _env.from_string(SUBJECTS[event]).render(**merged)
    html = _env.get_template(f"{event}.html").render(**merged)
    return subject, html
