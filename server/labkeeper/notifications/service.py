"""Outbound email for request, decision and expiry notices.

Delivery is best effort: callers schedule ``dispatch_notification`` after the
storage commit and a failed send is only logged.
"""

from dataclasses import dataclass
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from labkeeper.approvals.tokens import build_approval_link
from labkeeper.config import settings
from labkeeper.models import Transaction


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str


class EmailNotifier:
    def __init__(self, server: Optional[str] = None, port: Optional[int] = None):
        self.server = server or settings.SMTP_SERVER
        self.port = port or settings.SMTP_PORT

    def send(self, recipient: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = settings.FROM_EMAIL
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self.server, self.port) as server:
            server.starttls()
            if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg, to_addrs=[recipient])


def dispatch_notification(notification: Optional[Notification], notifier: Optional[EmailNotifier] = None) -> bool:
    if notification is None or not notification.recipient:
        return False
    if not settings.SEND_EMAILS:
        logger.info("Email disabled, skipping '%s' to %s", notification.subject, notification.recipient)
        return False
    try:
        (notifier or EmailNotifier()).send(notification.recipient, notification.subject, notification.body)
    except Exception:
        logger.warning("Failed to send '%s' to %s", notification.subject, notification.recipient, exc_info=True)
        return False
    logger.info("Email '%s' sent to %s", notification.subject, notification.recipient)
    return True


def _item_lines(transaction: Transaction) -> str:
    return "\n".join(
        f"  - {line.item.name if line.item else line.item_id} x {line.quantity} (lab {line.lab_id})"
        for line in transaction.items
    )


def approval_request(transaction: Transaction) -> Optional[Notification]:
    if not transaction.faculty_email or not transaction.approval_token:
        return None
    link = build_approval_link(transaction.approval_token)
    body = (
        f"Student {transaction.student_reg_no} requested components for project "
        f"'{transaction.project_name}'.\n\n"
        f"{_item_lines(transaction)}\n\n"
        f"Expected return: {transaction.expected_return_date:%Y-%m-%d}\n"
        f"Approve or reject: {link}\n"
    )
    return Notification(
        recipient=transaction.faculty_email,
        subject=f"Approval needed: {transaction.transaction_id}",
        body=body,
    )


def decision_notice(transaction: Transaction) -> Optional[Notification]:
    student = transaction.student
    if not student or not student.email:
        return None
    if transaction.status == "rejected":
        outcome = "was rejected"
        if transaction.rejected_reason:
            outcome += f": {transaction.rejected_reason}"
    else:
        outcome = f"is now {transaction.status}"
    return Notification(
        recipient=student.email,
        subject=f"Request {transaction.transaction_id} {transaction.status}",
        body=f"Your request {transaction.transaction_id} for '{transaction.project_name}' {outcome}.\n",
    )


def auto_reject_notice(transaction: Transaction) -> Optional[Notification]:
    notice = decision_notice(transaction)
    if notice is None:
        return None
    return Notification(
        recipient=notice.recipient,
        subject=f"Request {transaction.transaction_id} expired",
        body=notice.body,
    )
