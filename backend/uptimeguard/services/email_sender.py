"""Email sender service - delivers email contacts' alerts over SMTP."""
import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import List, Optional

from ..config import settings
from ..errors import DeliveryError

logger = logging.getLogger(__name__)


@dataclass
class EmailConfig:
    """SMTP configuration for sending emails."""
    host: str
    port: int
    username: str = ""
    password: str = ""
    use_tls: bool = True
    from_address: str = ""

    @classmethod
    def from_settings(cls) -> Optional["EmailConfig"]:
        """SMTP settings from the environment, or None when SMTP is not configured."""
        if not settings.smtp_host:
            return None
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username or "",
            password=settings.smtp_password or "",
            use_tls=settings.smtp_use_tls,
            from_address=settings.alert_email_from or "",
        )


def parse_recipients(to_address: str) -> List[str]:
    """Parse comma-separated email addresses into a list."""
    if not to_address:
        return []
    return [addr.strip() for addr in to_address.split(",") if addr.strip()]


class EmailSenderService:
    """Sends plain-text alert emails. SMTP runs in a worker thread."""

    async def send_email(self, config: EmailConfig, to_address: str, subject: str, body: str):
        """Send one email.

        Raises:
            DeliveryError: When there are no recipients or SMTP fails
        """
        recipients = parse_recipients(to_address)
        if not recipients:
            raise DeliveryError("No valid email recipients")

        await asyncio.to_thread(self._send_blocking, config, recipients, subject, body)
        logger.info(f"Email sent to {len(recipients)} recipient(s): {subject}")

    def _send_blocking(self, config: EmailConfig, recipients: List[str], subject: str, body: str):
        from_addr = config.from_address or config.username
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = ", ".join(recipients)

        try:
            with smtplib.SMTP(config.host, config.port, timeout=30) as server:
                if config.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if config.username and config.password:
                    server.login(config.username, config.password)
                server.sendmail(from_addr, recipients, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed for user '{config.username}': {e}")
            raise DeliveryError(f"SMTP authentication failed: {e}") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(f"Recipients refused by server: {e}") from e
        except smtplib.SMTPException as e:
            raise DeliveryError(f"SMTP error: {type(e).__name__}: {e}") from e
        except OSError as e:
            logger.error(f"Failed to connect to SMTP server {config.host}:{config.port}: {e}")
            raise DeliveryError(f"SMTP connection failed: {e}") from e


# Global instance
email_sender_service = EmailSenderService()
