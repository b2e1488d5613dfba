"""
Customer notifications sent through Resend.

Only one message exists today: the "your book has shipped" email with the
tracking link, sent when an order first reaches SHIPPED.
"""

from __future__ import annotations

import html
import logging
from typing import Optional

import resend
from resend.exceptions import ResendError

from .configuration import EmailSettings
from .errors import ConfigurationMissing

logger = logging.getLogger(__name__)

SHIPPED_TEMPLATE = """\
<div style="font-family: -apple-system, sans-serif; max-width: 500px; margin: 0 auto;">
  <h1 style="color: #1B4332;">Your book is on its way!</h1>
  <p>Your Team Season photo book has shipped and should arrive in 3-5 business days.</p>
  <p><strong>Tracking:</strong> <a href="{tracking_url}">{tracking_number}</a></p>
  <p style="color: #666; font-size: 14px; margin-top: 32px;">
    Long after the scores are forgotten, the moments remain.
  </p>
</div>
"""


class ShippingNotifier:
    """Sends shipping confirmations with the Resend API."""

    def __init__(self, settings: EmailSettings) -> None:
        if not settings.is_configured:
            raise ConfigurationMissing("email", "RESEND_API_KEY is not set")
        self.settings = settings

    def tracking_link(self, tracking_number: str, tracking_url: Optional[str] = None) -> str:
        return tracking_url or self.settings.tracking_fallback_url.format(tracking_number=tracking_number)

    def send_shipped(
        self,
        to: str,
        tracking_number: str,
        tracking_url: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> bool:
        """
        Email the customer their tracking link.

        Returns:
            True if Resend accepted the message. A rejected send is logged and
            reported as False; the order update that triggered it stands.
        """
        link = self.tracking_link(tracking_number, tracking_url)
        params: resend.Emails.SendParams = {
            "from": self.settings.from_address,
            "to": [to],
            "subject": self.settings.shipped_subject,
            "html": SHIPPED_TEMPLATE.format(
                tracking_url=html.escape(link, quote=True),
                tracking_number=html.escape(tracking_number),
            ),
        }
        resend.api_key = self.settings.api_key
        try:
            resend.Emails.send(params)
        except ResendError as exc:
            logger.error(f"Shipping email for {external_id or to} was rejected: {exc}")
            return False
        logger.info(f"Tracking email sent to {to} for {external_id or 'order'}")
        return True
