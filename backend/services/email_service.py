from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from config import settings

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, body_text: str, body_html: str | None = None) -> bool:
    """Send one message. Returns False when SMTP is not configured."""
    if not settings.SMTP_HOST:
        logger.info(f"SMTP not configured; skipping email '{subject}' to {to}")
        return False
    if any(c in f"{to}{subject}" for c in ("\r", "\n")):
        raise ValueError("Email headers must not contain line breaks")

    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((settings.SMTP_FROM_NAME, settings.SMTP_FROM_EMAIL))
    msg["To"] = to
    msg["Subject"] = subject
    msg.attach(MIMEText(body_text, "plain", "utf-8"))
    if body_html:
        msg.attach(MIMEText(body_html, "html", "utf-8"))

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS) as server:
        if settings.SMTP_USE_TLS:
            server.starttls(context=ssl.create_default_context())
        if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        server.sendmail(settings.SMTP_FROM_EMAIL, [to], msg.as_string())
    logger.info(f"Email '{subject}' sent to {to}")
    return True


def _format_amount(amount, currency: str | None) -> str:
    if amount is None:
        return "-"
    return f"{currency or settings.PAYMENT_CURRENCY} {int(amount):,}"


def send_upgrade_request_email(
    to: str,
    *,
    user_name: str,
    user_email: str,
    current_plan: str,
    requested_plan: str,
    reason: str | None,
    request_id: int,
    payment_required: bool,
    amount=None,
    currency: str | None = None,
) -> bool:
    lines = [
        f"{user_name or user_email} ({user_email}) requested a plan change.",
        "",
        f"Current plan: {current_plan}",
        f"Requested plan: {requested_plan}",
        f"Reason: {reason or 'Not provided'}",
        f"Request ID: {request_id}",
    ]
    if payment_required:
        lines.append(f"Payment: {_format_amount(amount, currency)} (pending)")
    lines += ["", f"Review pending requests at {settings.FRONTEND_URL}/admin/subscriptions"]
    return send_email(to, f"Subscription upgrade request: {requested_plan}", "\n".join(lines))


def send_upgrade_approved_email(
    to: str,
    *,
    user_name: str,
    new_plan: str,
    admin_notes: str | None = None,
) -> bool:
    lines = [
        f"Hi {user_name},",
        "",
        f"Your request to move to the {new_plan} plan has been approved.",
        "Your new limits are active now.",
    ]
    if admin_notes:
        lines += ["", f"Notes: {admin_notes}"]
    lines += ["", f"Dashboard: {settings.FRONTEND_URL}/dashboard"]
    return send_email(to, f"Your {settings.APP_NAME} plan is now {new_plan}", "\n".join(lines))


def send_upgrade_rejected_email(
    to: str,
    *,
    user_name: str,
    requested_plan: str,
    reason: str,
) -> bool:
    body = "\n".join([
        f"Hi {user_name},",
        "",
        f"Your request to move to the {requested_plan} plan was not approved.",
        f"Reason: {reason}",
        "",
        "You can submit a new request at any time.",
    ])
    return send_email(to, "Subscription upgrade request update", body)


def send_subscription_change_email(
    to: str,
    *,
    user_name: str,
    old_plan: str,
    new_plan: str,
    is_upgrade: bool,
    is_downgrade: bool,
) -> bool:
    if is_upgrade:
        headline = f"Your plan was upgraded from {old_plan} to {new_plan}."
    elif is_downgrade:
        headline = f"Your plan was changed from {old_plan} to {new_plan}. Some features may no longer be available."
    else:
        headline = f"Your plan was changed from {old_plan} to {new_plan}."
    body = "\n".join([f"Hi {user_name},", "", headline, "", "Your usage counters have been reset."])
    return send_email(to, f"{settings.APP_NAME} subscription updated", body)
