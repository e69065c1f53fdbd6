"""
Email SMTP notifier.
"""

import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from sigalert.database.models import NotificationIntent
from .base import Notifier, NotificationResult


class EmailNotifier(Notifier):
    """Sends notifications via email SMTP."""

    channel = "email"

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        timeout: float = 10,
    ):
        """
        Initialize email notifier.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
            timeout: Socket timeout in seconds
        """
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.timeout = timeout

    def send(self, intent: NotificationIntent, destination: str) -> NotificationResult:
        """Send notification via email."""
        try:
            message = self._create_message(intent, destination)

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.smtp_user:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return self.ok()

        except smtplib.SMTPAuthenticationError as e:
            return self.failure(f"Authentication failed: {str(e)}", retryable=False)
        except smtplib.SMTPRecipientsRefused as e:
            return self.failure(f"Recipient refused: {str(e)}", retryable=False)
        except (smtplib.SMTPException, socket.timeout, OSError) as e:
            return self.failure(f"SMTP error: {str(e)}")

    def _create_message(self, intent: NotificationIntent, destination: str) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = intent.title
        message["From"] = self.from_address
        message["To"] = destination

        message.attach(MIMEText(self._create_text_body(intent), "plain"))
        message.attach(MIMEText(self._create_html_body(intent), "html"))
        return message

    def _create_text_body(self, intent: NotificationIntent) -> str:
        """Create plain text email body."""
        return f"""
{intent.title}

{intent.message}
"""

    def _create_html_body(self, intent: NotificationIntent) -> str:
        """Create HTML email body."""
        return f"""
<!DOCTYPE html>
<html>
<head>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 0; padding: 20px; }}
        .alert-box {{
            border-left: 4px solid #3498DB;
            padding: 15px;
            background-color: #f9f9f9;
        }}
        .title {{ font-size: 20px; font-weight: bold; color: #333; }}
        .message {{ margin: 15px 0; color: #555; }}
    </style>
</head>
<body>
    <div class="alert-box">
        <div class="title">{escape(intent.title)}</div>
        <div class="message">{escape(intent.message)}</div>
    </div>
</body>
</html>
"""
