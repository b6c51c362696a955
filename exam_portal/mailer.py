import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)


class Mailer(ABC):
    @abstractmethod
    def send_message(self, to_address: str, subject: str, body: str) -> bool:
        ...


class LoggingMailer(Mailer):
    """Used when no SMTP host is configured. Never logs the body."""

    def send_message(self, to_address, subject, body):
        logger.info("Email delivery disabled, dropping %r for %s", subject, to_address)
        return True


class SMTPMailer(Mailer):
    def __init__(
        self,
        host: str,
        port: int,
        from_address: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.user = user
        self.password = password
        self.timeout = timeout

    def send_message(self, to_address, subject, body):
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg.set_content(body, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.user and self.password:
                    server.starttls()
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Email send error to %s: %s", to_address, e)
            return False
        return True
