"""Email notification of backup results over SMTP."""

import mimetypes
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import List, Optional, Sequence

from shared.logger import get_logger

logger = get_logger(__name__)


class EmailNotifier:
    """Sends plain-text reports, optionally with the run log attached."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 25,
        use_starttls: bool = False,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.use_starttls = use_starttls
        self.username = username
        self.password = password
        self.timeout = timeout

    def build_message(
        self,
        to: Sequence[str],
        from_addr: str,
        subject: str,
        body: str,
        attachment: Optional[Path] = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = ", ".join(to)
        msg.set_content(body)

        if attachment is not None and Path(attachment).is_file():
            attachment = Path(attachment)
            mime_type, _ = mimetypes.guess_type(attachment.name)
            if attachment.suffix == ".log":
                mime_type = "text/plain"
            maintype, subtype = (mime_type or "application/octet-stream").split("/", 1)
            msg.add_attachment(
                attachment.read_bytes(),
                maintype=maintype,
                subtype=subtype,
                filename=attachment.name,
            )
        return msg

    def send(
        self,
        to: Sequence[str],
        from_addr: str,
        subject: str,
        body: str,
        attachment: Optional[Path] = None,
    ) -> bool:
        """
        Send a report email.

        Args:
            to: Recipient addresses
            from_addr: Sender address
            subject: Subject line
            body: Plain-text body
            attachment: Optional file to attach (e.g. the run log)

        Returns:
            True if the message was accepted by the server, False otherwise
        """
        recipients: List[str] = [addr.strip() for addr in to if addr and addr.strip()]
        if not recipients:
            logger.warning("No notification recipients configured, email not sent")
            return False

        try:
            msg = self.build_message(recipients, from_addr, subject, body, attachment)
            with smtplib.SMTP(host=self.smtp_host, port=self.smtp_port, timeout=self.timeout) as smtp:
                if self.use_starttls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send notification via {self.smtp_host}:{self.smtp_port}: {e}")
            return False

        logger.info(f"Notification sent to {', '.join(recipients)}")
        return True
