"""
Outbound email.

Messages go out over SMTP when EMAIL_USER/EMAIL_PASS are configured.
Route handlers never send inline: they queue ``send_in_background`` on
FastAPI's BackgroundTasks so a mail failure is logged and the request that
triggered it still succeeds.
"""
import smtplib
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional

import structlog

import settings

logger = structlog.get_logger(__name__)


class EmailNotConfigured(RuntimeError):
    pass


def is_configured() -> bool:
    return bool(settings.EMAIL_USER and settings.EMAIL_PASS)


def send_email(to: str, subject: str, text: str, html: Optional[str] = None):
    if not is_configured():
        raise EmailNotConfigured("Email service not configured")

    message = EmailMessage()
    message["From"] = settings.EMAIL_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    if html:
        message.add_alternative(html, subtype="html")

    smtp_cls = smtplib.SMTP_SSL if settings.EMAIL_SECURE else smtplib.SMTP
    with smtp_cls(settings.EMAIL_HOST, settings.EMAIL_PORT, timeout=30) as smtp:
        if not settings.EMAIL_SECURE:
            smtp.starttls()
        smtp.login(settings.EMAIL_USER, settings.EMAIL_PASS)
        smtp.send_message(message)
    logger.info("email_sent", to=to, subject=subject)


# Templates

def _money(value: float) -> str:
    return f"${value:,.2f}"


def welcome_template(user: Dict[str, Any]) -> Dict[str, str]:
    name = user.get("name", "there")
    return {
        "subject": "Welcome to Marketly!",
        "text": (
            f"Hi {name},\n\nThanks for creating a Marketly account. "
            f"Start shopping at {settings.FRONTEND_URL}.\n\nThe Marketly Team"
        ),
        "html": (
            f"<h1>Welcome, {name}!</h1><p>Thanks for creating a Marketly account.</p>"
            f'<p><a href="{settings.FRONTEND_URL}">Start shopping</a></p>'
        ),
    }


def order_confirmation_template(order: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, str]:
    lines = "\n".join(
        f"- {item['name']} x{item['quantity']}: {_money(item['price'] * item['quantity'])}"
        for item in order.get("items", [])
    )
    return {
        "subject": f"Order Confirmation - {order['order_number']}",
        "text": (
            f"Hi {user.get('name', '')},\n\nWe received your order {order['order_number']}.\n\n"
            f"{lines}\n\nTotal: {_money(order['total'])}\n\n"
            f"Track it at {settings.FRONTEND_URL}/orders/{order['_id']}"
        ),
    }


def order_status_template(order: Dict[str, Any], user: Dict[str, Any], status: str) -> Dict[str, str]:
    text = f"Hi {user.get('name', '')},\n\nYour order {order['order_number']} is now {status}."
    if order.get("tracking_number"):
        text += f"\nTracking number: {order['tracking_number']} ({order.get('carrier') or 'carrier'})"
    return {
        "subject": f"Order {order['order_number']} - {status.capitalize()}",
        "text": text,
    }


def password_reset_template(user: Dict[str, Any], token: str) -> Dict[str, str]:
    url = f"{settings.FRONTEND_URL}/reset-password/{token}"
    return {
        "subject": "Password Reset Request",
        "text": (
            f"Hi {user.get('name', '')},\n\nReset your password here: {url}\n"
            "The link expires in 10 minutes. Ignore this email if you did not ask for it."
        ),
    }


def verification_template(user: Dict[str, Any], token: str) -> Dict[str, str]:
    url = f"{settings.FRONTEND_URL}/verify-email/{token}"
    return {
        "subject": "Verify your email address",
        "text": f"Hi {user.get('name', '')},\n\nConfirm your email address: {url}",
    }


# Senders

def send_welcome_email(user: Dict[str, Any]):
    if not settings.IS_PRODUCTION:
        logger.info("welcome_email_skipped", email=user.get("email"), env=settings.APP_ENV)
        return
    if not is_configured():
        return
    template = welcome_template(user)
    send_email(user["email"], template["subject"], template["text"], template.get("html"))


def send_order_confirmation_email(order: Dict[str, Any], user: Dict[str, Any]):
    if not is_configured():
        return
    template = order_confirmation_template(order, user)
    send_email(order["shipping_address"]["email"], template["subject"], template["text"])


def send_order_status_email(order: Dict[str, Any], user: Dict[str, Any], status: str):
    if not is_configured():
        return
    template = order_status_template(order, user, status)
    send_email(user["email"], template["subject"], template["text"])


def send_password_reset_email(user: Dict[str, Any], token: str):
    template = password_reset_template(user, token)
    send_email(user["email"], template["subject"], template["text"])


def send_verification_email(user: Dict[str, Any], token: str):
    template = verification_template(user, token)
    send_email(user["email"], template["subject"], template["text"])


def send_in_background(sender: Callable[..., Any], *args: Any):
    try:
        sender(*args)
    except Exception:
        logger.exception("email_failed", sender=sender.__name__)
