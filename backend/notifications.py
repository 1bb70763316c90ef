# backend/notifications.py

"""
Critical stock e-mail notifications (Resend).

Runs after a weighing has committed; a failed or skipped e-mail never
affects the weighing itself.
"""

import asyncio
from typing import List, Optional

import resend

from number_format import format_fixed
from weighing_models import WeighingResult

import logging

logger = logging.getLogger(__name__)


class CriticalStockNotifier:
    def __init__(self, api_key: Optional[str], sender: str, recipients: List[str]):
        self.api_key = api_key
        self.sender = sender
        self.recipients = [r for r in recipients if r]

    async def send_email_notification(self, to_emails: List[str], subject: str, html_content: str):
        """Send email notification using Resend"""
        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured, skipping email")
            return None
        if not to_emails:
            logger.warning(f"No recipients configured, skipping email '{subject}'")
            return None

        resend.api_key = self.api_key
        try:
            params = {
                "from": self.sender,
                "to": to_emails,
                "subject": subject,
                "html": html_content
            }
            result = await asyncio.to_thread(resend.Emails.send, params)
            logger.info(f"Email sent to {to_emails}: {result}")
            return result
        except Exception as e:
            logger.error(f"Failed to send email: {str(e)}")
            return None

    async def notify_critical_stock(self, result: WeighingResult):
        """Send notification when a weighing leaves a compound below its critical level"""
        if not result.below_critical:
            return None

        usage = result.usage
        remaining = f"{format_fixed(usage.remaining_stock, 2)} {usage.remaining_stock_unit}"
        subject = f"Critical stock: {usage.compound_name} ({usage.cas_number})"
        html_content = f"""
        <h2>Compound below critical level</h2>
        <p><strong>{usage.compound_name}</strong> (CAS {usage.cas_number}) has dropped below its critical stock level.</p>
        <ul>
            <li>Remaining stock: {remaining}</li>
            <li>Last weighing: {format_fixed(usage.weighed_amount, 3)} {usage.weighed_unit} by {usage.prepared_by}</li>
            <li>Label: {usage.label_code_used}</li>
        </ul>
        <p>Please arrange replenishment.</p>
        """
        return await self.send_email_notification(self.recipients, subject, html_content)
