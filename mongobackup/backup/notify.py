"""
Notification mail over SMTP (STARTTLS + PLAIN login).
"""

import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional


logger = logging.getLogger(__name__)


class MailError(Exception):
    """Raised when a notification cannot be delivered."""
    pass


class Mailer:
    """Sends plain text notification mail through one SMTP relay."""

    def __init__(self, address: str, port: int, user_name: str, password: str,
                 domain: Optional[str] = None, timeout: int = 30):
        self.address = address
        self.port = port
        self.user_name = user_name
        self.password = password
        self.domain = domain
        self.timeout = timeout

    def build_message(self, sender: str, to: List[str], subject: str, body: str,
                      cc: Optional[List[str]] = None) -> EmailMessage:
        message = EmailMessage()
        message['From'] = sender
        if to:
            message['To'] = ', '.join(to)
        if cc:
            message['Cc'] = ', '.join(cc)
        message['Subject'] = subject
        message.set_content(body or '')
        return message

    def send(self, sender: str, to: List[str], subject: str, body: str,
             cc: Optional[List[str]] = None):
        """
        Deliver one message synchronously.

        Raises:
            MailError: If there are no recipients or delivery fails
        """
        if not to and not cc:
            raise MailError(f"No recipients for '{subject}'")

        message = self.build_message(sender, to, subject, body, cc)

        try:
            with smtplib.SMTP(self.address, self.port, local_hostname=self.domain,
                              timeout=self.timeout) as smtp:
                smtp.starttls()
                smtp.login(self.user_name, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailError(f"Failed to send '{subject}': {e}")

        logger.info(f"Sent '{subject}' to {', '.join(to + (cc or []))}")
