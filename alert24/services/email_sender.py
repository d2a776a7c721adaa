"""Email sender - delivers notifications via SMTP."""
import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import List

from .dispatch_result import DispatchResult

logger = logging.getLogger(__name__)


@dataclass
class EmailConfig:
    """SMTP configuration for sending emails."""
    host: str
    port: int
    username: str
    password: str
    use_tls: bool = True
    from_address: str = ""
    timeout_seconds: float = 30


class EmailSender:
    """Sends plain-text notification emails via SMTP."""

    def __init__(self, config: EmailConfig):
        self.config = config

    def _parse_recipients(self, to_address: str) -> List[str]:
        """Parse comma-separated email addresses into a list."""
        if not to_address:
            return []
        return [addr.strip() for addr in to_address.split(",") if addr.strip()]

    async def send(self, to_address: str, subject: str, body: str) -> DispatchResult:
        """Send an email. Returns a structured result and never raises."""
        config = self.config
        if not config.host:
            logger.warning("Email not configured - missing SMTP host")
            return DispatchResult(success=False, error="Email service not configured")

        recipients = self._parse_recipients(to_address)
        if not recipients:
            return DispatchResult(success=False, error="No valid recipients")

        from_addr = config.from_address or config.username
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = ", ".join(recipients)
        message_id = make_msgid(domain=from_addr.split("@")[-1] if "@" in from_addr else None)
        msg["Message-ID"] = message_id
        msg.attach(MIMEText(body, "plain"))

        try:
            # smtplib blocks; keep it off the event loop
            await asyncio.to_thread(self._deliver, from_addr, recipients, msg.as_string())
            logger.info(f"Email sent to {len(recipients)} recipient(s): {subject}")
            return DispatchResult(success=True, provider_message_id=message_id)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for user '{config.username}': {e}")
            return DispatchResult(success=False, error=f"SMTP authentication failed: {e}")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"Recipients refused by server: {e}")
            return DispatchResult(success=False, error=f"Recipients refused: {e}")
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {type(e).__name__}: {e}")
            return DispatchResult(success=False, error=f"{type(e).__name__}: {e}")
        except (ConnectionRefusedError, TimeoutError, OSError) as e:
            logger.error(f"Could not reach SMTP server {config.host}:{config.port}: {e}")
            return DispatchResult(success=False, error=f"Connection error: {e}")

    def _deliver(self, from_addr: str, recipients: List[str], message: str):
        config = self.config
        with smtplib.SMTP(config.host, config.port, timeout=config.timeout_seconds) as server:
            if config.use_tls:
                server.starttls(context=ssl.create_default_context())
            if config.username and config.password:
                server.login(config.username, config.password)
            server.sendmail(from_addr, recipients, message)
