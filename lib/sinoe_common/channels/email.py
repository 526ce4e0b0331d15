"""
SES email fallback channel.

Stateless store-and-forget delivery used when the primary channel is
unavailable, and for out-of-band delivery of the pairing QR code.
"""

import logging
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from sinoe_common.channels.base import PairingArtifact
from sinoe_common.constants import DEFAULT_TIMEZONE
from sinoe_common.logging_utils import mask_email
from sinoe_common.messages import build_pairing_email
from sinoe_common.models import Recipient

logger = logging.getLogger(__name__)


class EmailChannel:
    """Fallback channel sending through Amazon SES."""

    def __init__(
        self,
        sender: str,
        enabled: bool = True,
        region_name: str | None = None,
        ses_client=None,
        timezone: str = DEFAULT_TIMEZONE,
    ):
        """
        Initialize the email channel.

        Args:
            sender: Verified SES sender address
            enabled: False turns every send into a logged no-op
            region_name: Optional AWS region name
            ses_client: Optional boto3 SES client
            timezone: Display timezone for the pairing email
        """
        self.sender = sender
        self.enabled = enabled and bool(sender)
        self.region_name = region_name
        self.timezone = timezone
        self.ses = ses_client or (boto3.client("ses", region_name=region_name) if self.enabled else None)
        self.initialized = False

    def initialize(self) -> bool:
        """Check SES access. Returns False when disabled or unreachable."""
        if not self.enabled:
            logger.info("Email channel is disabled")
            return False
        try:
            quota = self.ses.get_send_quota()
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to initialize email channel: {e}")
            return False

        self.initialized = True
        logger.info(
            f"Email channel ready (sent {quota.get('SentLast24Hours', 0)}"
            f"/{quota.get('Max24HourSend', 0)} in the last 24h)"
        )
        return True

    def send(self, address: str, subject: str, body: str, html: str | None = None) -> bool:
        """
        Send a message.

        Args:
            address: Destination email address
            subject: Subject line
            body: Plain text body
            html: Optional HTML alternative

        Returns:
            True if SES accepted the message
        """
        if not self.enabled:
            logger.debug("Email channel not enabled, skipping send")
            return False
        if not address:
            logger.error("Email send skipped: no destination address")
            return False

        message_body: dict[str, Any] = {"Text": {"Data": body, "Charset": "UTF-8"}}
        if html:
            message_body["Html"] = {"Data": html, "Charset": "UTF-8"}

        try:
            response = self.ses.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [address]},
                Message={"Subject": {"Data": subject, "Charset": "UTF-8"}, "Body": message_body},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to send email to {mask_email(address)}: {e}")
            return False

        logger.info(f"Email sent to {mask_email(address)} (MessageId: {response.get('MessageId')})")
        return True

    def send_pairing_artifact(self, artifact: PairingArtifact, user: Recipient) -> bool:
        """
        Email the pairing QR code to the account owner.

        Returns:
            True if SES accepted the message
        """
        if not self.enabled:
            return False
        if not user.email:
            logger.warning(f"No email configured for pairing owner {user.name}")
            return False

        subject, html_body = build_pairing_email(user, timezone=self.timezone)

        message = MIMEMultipart("related")
        message["Subject"] = subject
        message["From"] = self.sender
        message["To"] = user.email
        message.attach(MIMEText(html_body, "html", "utf-8"))
        if artifact.qr_png:
            image = MIMEImage(artifact.qr_png, "png")
            image.add_header("Content-ID", "<qr-code>")
            image.add_header("Content-Disposition", "inline", filename="whatsapp-qr.png")
            message.attach(image)
        elif artifact.code:
            message.attach(MIMEText(f"Código de vinculación: {artifact.code}", "plain", "utf-8"))

        try:
            self.ses.send_raw_email(
                Source=self.sender,
                Destinations=[user.email],
                RawMessage={"Data": message.as_string()},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to send pairing code to {mask_email(user.email)}: {e}")
            return False

        logger.info(f"Pairing QR (attempt {artifact.attempt}) sent to {mask_email(user.email)}")
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "initialized": self.initialized,
            "sender": self.sender,
        }
