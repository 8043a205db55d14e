import logging
import smtplib
from email.message import EmailMessage
from functools import lru_cache
from typing import Optional

from . import config

logger = logging.getLogger(__name__)


class Mailer:
    """Sends customer emails over SMTP. Delivery problems are logged, never raised."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
    ):
        self.host = config.SMTP_HOST if host is None else host
        self.port = port or config.SMTP_PORT
        self.user = config.SMTP_USER if user is None else user
        self.password = config.SMTP_PASS if password is None else password
        self.sender = sender or config.SMTP_FROM

    def send(self, to: str, subject: str, html: str) -> bool:
        if not self.host:
            logger.info("SMTP not configured, skipping mail %r to %s", subject, to)
            return False
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=10) as smtp:
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send %r to %s: %s", subject, to, e)
            return False
        logger.info("Sent %r to %s", subject, to)
        return True

    def send_order_confirmation(self, order: dict, email: str) -> bool:
        lines = "".join(
            f"<li>{item['name']} x {item['quantity']} - &#8377;{item['price'] * item['quantity']:.2f}</li>"
            for item in order.get("items", [])
        )
        html = (
            "<h1>Thank you for your order!</h1>"
            f"<p>Order ID: {order['_id']}</p>"
            f"<p>Total Amount: &#8377;{order['total_value']:.2f}</p>"
            f"<h2>Order Details:</h2><ul>{lines}</ul>"
        )
        return self.send(email, "Order Confirmation - Royal Jewels", html)

    def send_gift_card(self, card: dict, email: str) -> bool:
        html = (
            "<h1>Your Gift Card Details</h1>"
            f"<p>Amount: &#8377;{card['amount']:.2f}</p>"
            f"<p>Code: {card['code']}</p>"
            f"<p>Valid until: {card['expires_at']:%Y-%m-%d}</p>"
        )
        return self.send(email, "Your Royal Jewels Gift Card", html)

    def send_investment_confirmation(self, entry: dict, email: str) -> bool:
        kind = "Purchase" if entry["amount"] > 0 else "Sale"
        html = (
            "<h1>Investment Confirmation</h1>"
            f"<p>Type: {entry['type']}</p>"
            f"<p>Amount: {abs(entry['amount'])}g</p>"
            f"<p>Value: &#8377;{entry['price']:.2f}</p>"
            f"<p>Transaction Type: {kind}</p>"
        )
        return self.send(email, "Investment Confirmation - Royal Jewels", html)


@lru_cache()
def get_mailer() -> Mailer:
    return Mailer()
