import asyncio
import logging
import smtplib
from email.message import EmailMessage
from ..config import Config

logger = logging.getLogger(__name__)

class EmailError(Exception):
    pass

class EmailSender:
    """Plain-text notices over SMTP; 465 uses implicit TLS, other ports STARTTLS"""

    def __init__(self, host: str = Config.EMAIL_HOST, port: int = Config.EMAIL_PORT,
                 user: str = Config.EMAIL_USER, password: str = Config.EMAIL_PASSWORD,
                 sender: str = Config.EMAIL_FROM, timeout: float = Config.EXTERNAL_CALL_TIMEOUT):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def _send(self, message: EmailMessage):
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            if self.port != 465:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(message)

    async def send_email_notice(self, address: str, subject: str, body: str):
        if not self.host:
            raise EmailError("SMTP is not configured")

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = address
        message["Subject"] = subject
        message.set_content(body)

        try:
            await asyncio.wait_for(asyncio.to_thread(self._send, message), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise EmailError(f"SMTP server did not answer within {self.timeout}s")
        except (smtplib.SMTPException, OSError) as e:
            raise EmailError(f"Sending email to {address} failed: {e}")

        logger.info(f"Email '{subject}' sent to {address}")
