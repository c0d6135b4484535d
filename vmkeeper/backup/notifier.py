"""
Email notification of backup run results.
"""

import socket
import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

from .settings import NotificationSettings


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification cannot be sent."""
    pass


class EmailNotifier:
    """Sends the run summary through an SMTP relay."""

    def __init__(self, settings: NotificationSettings, timeout: int = 30):
        self.settings = settings
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def build_message(self, subject: str, body: str) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg['From'] = self.settings.sender
        msg['To'] = ', '.join(self.settings.recipients)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain', 'utf-8'))
        return msg

    def send(self, subject: str, body: str):
        """
        Send one email to the configured recipients.

        Raises:
            NotificationError: If the relay cannot be reached or rejects the message
        """
        msg = self.build_message(subject, body)

        try:
            with smtplib.SMTP(self.settings.smtp_server, self.settings.smtp_port, timeout=self.timeout) as server:
                if self.settings.use_tls:
                    server.starttls()
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password or '')
                server.send_message(msg)
        except (smtplib.SMTPException, socket.error) as e:
            raise NotificationError(f"Failed to send notification via {self.settings.smtp_server}: {e}") from e

        logger.info(f"Notification sent: {subject}")
