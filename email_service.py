from email.message import EmailMessage
import logging
import os
import smtplib

from sqlmodel import Session

from db import EmailLog

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@signaldesk.local")

logger = logging.getLogger(__name__)


def _deliver(to: str, subject: str, body: str):
    msg = EmailMessage()
    msg["From"] = MAIL_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=10) as smtp:
        smtp.starttls()
        if SMTP_USER:
            smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(msg)


def send_email(
    session: Session,
    to: str,
    email_type: str,
    subject: str,
    body: str,
    user_id: int | None = None,
    details: dict | None = None,
) -> EmailLog:
    """Send one message and record the attempt in ``email_logs``.

    Without an SMTP relay the message is only logged and stored as pending.
    Delivery errors are recorded on the log row, never raised.
    """
    log = EmailLog(
        user_id=user_id,
        email_to=to,
        email_type=email_type,
        subject=subject,
        body=body,
        details=details or {},
    )
    if not SMTP_HOST:
        log.status = "pending"
        logger.info("SMTP not configured, %s email to %s queued", email_type, to)
    else:
        try:
            _deliver(to, subject, body)
            log.status = "sent"
        except (smtplib.SMTPException, OSError) as exc:
            logger.exception("Sending %s email to %s failed", email_type, to)
            log.status = "failed"
            log.error_message = str(exc)
    session.add(log)
    session.commit()
    session.refresh(log)
    return log


def send_welcome_email(session: Session, user_id: int, email: str, name: str, unique_id: str, plan_name: str):
    body = (
        f"Hi {name},\n\n"
        f"Welcome aboard. Your member ID is {unique_id}.\n"
        f"You picked the {plan_name} plan; complete the payment to activate your signals.\n"
    )
    return send_email(
        session,
        email,
        "welcome",
        "Welcome to SignalDesk",
        body,
        user_id=user_id,
        details={"unique_id": unique_id, "plan_name": plan_name},
    )


def send_payment_success_email(
    session: Session,
    email: str,
    name: str,
    amount: float,
    plan_name: str,
    transaction_id: str,
    user_id: int,
    features: list[str],
):
    lines = "\n".join(f"  - {f}" for f in features)
    body = (
        f"Hi {name},\n\n"
        f"We received your payment of ${amount:.2f} for the {plan_name} plan.\n"
        f"Transaction: {transaction_id}\n\n"
        f"Your plan includes:\n{lines}\n"
    )
    return send_email(
        session,
        email,
        "payment_confirmation",
        f"Payment confirmed: {plan_name}",
        body,
        user_id=user_id,
        details={"amount": f"{amount:.2f}", "plan_name": plan_name, "transaction_id": transaction_id},
    )
