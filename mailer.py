import logging
from typing import Dict, Optional

import resend

import config
from errors import UpstreamError

logger = logging.getLogger(__name__)

STATUS_MESSAGES: Dict[str, Dict[str, str]] = {
    "pending": {
        "title": "Order Received",
        "message": "We have received your order and it is being processed.",
        "color": "#f59e0b",
    },
    "processing": {
        "title": "Order Processing",
        "message": "Your order is currently being prepared for shipment.",
        "color": "#3b82f6",
    },
    "shipped": {
        "title": "Order Shipped",
        "message": "Great news! Your order has been shipped and is on its way to you.",
        "color": "#8b5cf6",
    },
    "delivered": {
        "title": "Order Delivered",
        "message": "Your order has been successfully delivered. We hope you enjoy your purchase!",
        "color": "#10b981",
    },
    "cancelled": {
        "title": "Order Cancelled",
        "message": "Your order has been cancelled. If you have any questions, please contact our support team.",
        "color": "#ef4444",
    },
}

STATUS_NOTES = {
    "shipped": "You should receive your package within 3-5 business days. You will receive a tracking number shortly.",
    "delivered": "If you have any issues with your order, please don't hesitate to contact our customer support team.",
}


def short_order_id(order_id: str) -> str:
    return str(order_id)[-6:].upper()


def build_status_email_html(order_id: str, status: str) -> str:
    info = STATUS_MESSAGES.get(status, STATUS_MESSAGES["pending"])
    note = STATUS_NOTES.get(status)
    note_html = f"<p><strong>Note:</strong> {note}</p>" if note else ""
    return f"""<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; background-color: #f4f4f4;">
    <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff;">
      <div style="background-color: #1f2937; color: white; padding: 20px; text-align: center;">
        <h1>Order Status Update</h1>
      </div>
      <div style="padding: 30px;">
        <p>We wanted to update you on the status of your recent order.</p>
        <div style="background-color: #f8f9fa; padding: 20px; border-radius: 8px;">
          <p><strong>Order ID:</strong> #{short_order_id(order_id)}</p>
          <p><strong>Status:</strong>
            <span style="padding: 8px 16px; border-radius: 20px; color: white; background-color: {info['color']};">{status.upper()}</span>
          </p>
        </div>
        <h3>{info['title']}</h3>
        <p>{info['message']}</p>
        {note_html}
        <p>Thank you for choosing our store!</p>
      </div>
    </div>
  </body>
</html>"""


class Mailer:
    """Thin wrapper over the Resend API. Unconfigured mailers log and skip."""

    def __init__(self, api_key: Optional[str] = None, sender: Optional[str] = None):
        self.api_key = (api_key if api_key is not None else config.RESEND_API_KEY).strip()
        self.sender = sender or config.EMAIL_FROM

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> bool:
        if not self.configured:
            logger.info("Email not configured, skipping message to %s", to)
            return False
        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "text": text,
            "html": html or text.replace("\n", "<br>"),
        }
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            raise UpstreamError(f"Email delivery failed: {exc}") from exc
        logger.info("Email sent to %s (%s)", to, response.get("id") if isinstance(response, dict) else response)
        return True

    def send_order_status_email(self, to: str, order_id: str, status: str) -> bool:
        info = STATUS_MESSAGES.get(status, STATUS_MESSAGES["pending"])
        short_id = short_order_id(order_id)
        text = (
            f"Hello,\n\nYour order #{short_id} status has been updated to: {status}.\n\n"
            f"{info['message']}\n\nThank you for shopping with us!\n\nBest regards,\nE-Commerce Store Team"
        )
        return self.send(
            to,
            subject=f"{info['title']} - Order #{short_id}",
            text=text,
            html=build_status_email_html(order_id, status),
        )


mailer = Mailer()


def get_mailer() -> Mailer:
    return mailer
