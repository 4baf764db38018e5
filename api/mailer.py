from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, select_autoescape

from database.models.orders import Order
from utils.checkout import window_label
from utils.config import CURRENCY, PUBLIC_BASE_URL, SUPPORT_EMAIL
from utils.logger import get_logger
from utils.statuses import status_map, status_messages

log = get_logger("[Mailer]")

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "emails"

SUBJECTS = {
    "orderConfirmed": "Order Confirmed - Strawberry Dips #{short_id}",
    "orderPreparing": "Order Update - Strawberry Dips #{short_id}",
    "orderOutForDelivery": "Order Update - Strawberry Dips #{short_id}",
    "orderDelivered": "Order Update - Strawberry Dips #{short_id}",
    "statusUpdate": "Order Update - Strawberry Dips #{short_id}",
    "paymentReminder": "Complete Your Payment - Strawberry Dips Order #{short_id}",
}


@dataclass
class RenderedEmail:
    template: str
    to: str
    subject: str
    html: str


def _money(value) -> str:
    return f"{CURRENCY} {float(value or 0):,.2f}"


class Mailer:
    def __init__(
            self,
            host: str,
            port: int,
            username: Optional[str],
            password: Optional[str],
            sender: str,
            templates_dir: Path = TEMPLATES_DIR,
            timeout: float = 20,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["money"] = _money
        self.env.filters["window"] = window_label

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    def render(self, template: str, order: Order, **extra) -> RenderedEmail:
        if template not in SUBJECTS:
            raise KeyError(f"Unknown email template: {template}")

        context = {
            "order": order,
            "short_id": order.id[:8],
            "status_label": status_map.get(order.status, order.status.value),
            "status_message": status_messages.get(order.status, ""),
            "support_email": SUPPORT_EMAIL,
            "base_url": PUBLIC_BASE_URL,
            "track_url": f"{PUBLIC_BASE_URL}/track?code={order.tracking_code}",
            **extra,
        }
        html = self.env.get_template(f"{template}.html").render(**context)
        subject = SUBJECTS[template].format(short_id=order.id[:8])
        return RenderedEmail(template=template, to=order.customer_email, subject=subject, html=html)

    async def send(self, email: RenderedEmail) -> bool:
        """
        Returns False without sending when SMTP is not configured.
        SMTP failures are logged and raised.
        """
        if not self.configured:
            log.warning(f"[Mailer] SMTP not configured, '{email.template}' to {email.to} not sent")
            return False

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = email.to
        message["Subject"] = email.subject
        message.set_content("This email requires an HTML-capable mail client.")
        message.add_alternative(email.html, subtype="html")

        try:
            await aiosmtplib.send(
                message,
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                start_tls=True,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPException as e:
            log.error(f"[Mailer] Sending '{email.template}' to {email.to} failed: {e}")
            raise

        log.info(f"[Mailer] '{email.template}' sent to {email.to} [✓]")
        return True

    async def send_template(self, template: str, order: Order, **extra) -> bool:
        return await self.send(self.render(template, order, **extra))
