"""Run notifications

Delivery is best-effort: a transport failure is logged and reported as
False, never raised into the run.
"""

import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import List, Optional, Sequence, Tuple, Type

import httpx

from hostbackup.backup.outcome import RunStatus
from hostbackup.config import BackupSettings
from hostbackup.logger import Logger


class Notifier(ABC):
    """Operator notification channel"""

    def __init__(self, logger: Logger):
        self.logger = logger

    @abstractmethod
    def notify(self, status: RunStatus, subject: str, body: str) -> bool:
        """Deliver a notification

        Returns:
            True if delivered, False if delivery failed
        """
        pass


class NotificationTransport(Notifier):
    """A single delivery mechanism, such as mail or a webhook"""

    # Exceptions that mean "delivery failed" for this transport
    delivery_errors: Tuple[Type[BaseException], ...] = (OSError,)

    @abstractmethod
    def _deliver(self, status: RunStatus, subject: str, body: str) -> None:
        pass

    def notify(self, status: RunStatus, subject: str, body: str) -> bool:
        try:
            self._deliver(status, subject, body)
        except self.delivery_errors as e:
            self.logger.error(f"Notification delivery failed: {e}",
                              transport=type(self).__name__)
            return False
        self.logger.info(f"Notification sent: {subject}", transport=type(self).__name__)
        return True


class MailNotifier(NotificationTransport):
    """Plain-text mail through an SMTP relay"""

    delivery_errors = (smtplib.SMTPException, OSError)

    def __init__(self, logger: Logger, recipient: str, sender: str,
                 smtp_host: str = "localhost", smtp_port: int = 25, timeout: int = 10):
        super().__init__(logger)
        self.recipient = recipient
        self.sender = sender
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.timeout = timeout

    def _deliver(self, status: RunStatus, subject: str, body: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = self.recipient
        message["X-Backup-Status"] = status.value
        message.set_content(body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            smtp.send_message(message)


class WebhookNotifier(NotificationTransport):
    """JSON POST to a webhook endpoint"""

    delivery_errors = (httpx.HTTPError,)

    def __init__(self, logger: Logger, url: str, timeout: int = 10,
                 client: Optional[httpx.Client] = None):
        super().__init__(logger)
        self.url = url
        self.timeout = timeout
        self._client = client

    def _deliver(self, status: RunStatus, subject: str, body: str) -> None:
        payload = {"status": status.value, "subject": subject, "body": body}
        if self._client is not None:
            response = self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=payload)
        response.raise_for_status()


class CompositeNotifier(Notifier):
    """Fans a notification out to every configured transport

    Delivered when at least one transport succeeds.
    """

    def __init__(self, logger: Logger, notifiers: Sequence[Notifier]):
        super().__init__(logger)
        self.notifiers: List[Notifier] = list(notifiers)

    def notify(self, status: RunStatus, subject: str, body: str) -> bool:
        if not self.notifiers:
            self.logger.warning("No notification transport configured", subject=subject)
            return False
        results = [n.notify(status, subject, body) for n in self.notifiers]
        return any(results)


def build_notifier(settings: BackupSettings, logger: Logger) -> Notifier:
    """Notifier for every transport the settings configure"""
    notifiers: List[Notifier] = []
    if settings.admin_email:
        notifiers.append(MailNotifier(
            logger,
            recipient=settings.admin_email,
            sender=settings.sender,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            timeout=settings.notify_timeout,
        ))
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(logger, settings.webhook_url,
                                         timeout=settings.notify_timeout))
    return CompositeNotifier(logger, notifiers)
