"""User notifications for retried calendar operations."""
import smtplib
from email.mime.text import MIMEText
from typing import Optional

from calendar_retry import settings
from calendar_retry.logging_conf import logger
from calendar_retry.queue.models import OperationType, QueueItem
from calendar_retry.queue.scheduler import BACKOFF_WINDOW

PAST_TENSE = {
    OperationType.CREATE: "created",
    OperationType.UPDATE: "updated",
    OperationType.DELETE: "deleted",
}


def describe_ride(item: QueueItem) -> str:
    return f'"{item.display_title or "Unknown"}" (Row {item.display_ref or "Unknown"})'


def success_message(item: QueueItem) -> str:
    # attempt_count only counts failures, so the succeeding attempt is one more
    attempts = item.attempt_count + 1
    return (
        f"Calendar event {PAST_TENSE[item.type]} successfully for ride {describe_ride(item)} "
        f"after {attempts} attempt(s).\n\nRide URL: {item.correlation_key}"
    )


def failure_message(item: QueueItem) -> str:
    hours = int(BACKOFF_WINDOW.total_seconds() // 3600)
    return (
        f"Failed to {item.type.value} calendar event for ride {describe_ride(item)} "
        f"after {item.attempt_count} attempts over {hours} hours. Last error: {item.last_error}"
    )


class LogNotifier:
    """Notifier used when no mail server is configured; writes to the log only."""

    def notify_success(self, item: QueueItem) -> None:
        logger.info(f"Retry SUCCESS: {success_message(item)} - User: {item.owner_email}",
                    extra={"item_id": item.id, "correlation_key": item.correlation_key})

    def notify_failure(self, item: QueueItem) -> None:
        logger.error(f"Retry FAILURE: {failure_message(item)} - User: {item.owner_email}",
                     extra={"item_id": item.id, "correlation_key": item.correlation_key})


class EmailNotifier(LogNotifier):
    """Emails the item's owner when an operation finally succeeds or is abandoned."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: Optional[str] = None,
        notify_on_success: Optional[bool] = None,
    ):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.sender = sender or settings.NOTIFY_FROM
        self.notify_on_success = (
            settings.NOTIFY_ON_SUCCESS if notify_on_success is None else notify_on_success
        )

    def notify_success(self, item: QueueItem) -> None:
        super().notify_success(item)
        if not self.notify_on_success:
            return
        self._send(
            item,
            subject=f"Calendar Event {PAST_TENSE[item.type].capitalize()}",
            body=success_message(item),
        )

    def notify_failure(self, item: QueueItem) -> None:
        super().notify_failure(item)
        body = (
            f"{failure_message(item)}\n\n"
            f"Ride URL: {item.correlation_key}\n"
            f"User email: {item.owner_email}\n\n"
            f"Please {item.type.value} the calendar event for this ride manually."
        )
        self._send(item, subject=f"Calendar Event {item.type.value.capitalize()} Failed", body=body)

    def _send(self, item: QueueItem, subject: str, body: str) -> None:
        if not item.owner_email:
            logger.warning("No owner email on item; notification not sent",
                           extra={"item_id": item.id})
            return

        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = item.owner_email

        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)
        logger.info(f"Notification email sent to {item.owner_email}: {subject}",
                    extra={"item_id": item.id})
