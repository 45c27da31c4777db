"""Customer and admin notification emails sent through Resend."""

import logging
from datetime import datetime
from html import escape
from typing import Dict, List, Optional, Tuple

import resend

logger = logging.getLogger(__name__)

BRAND_NAME = "Prestige Designs"
brand_colors = {
    "background": "#0f0f12",
    "card": "#17171c",
    "border": "#2a2a33",
    "gold": "#d4af37",
    "text_primary": "#f5f3ee",
    "text_muted": "#a19f99",
}


def send_email_via_resend(payload: Dict[str, object], api_key: str) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def build_email_html(title: str, paragraphs: List[str], links: Optional[List[Dict]] = None) -> str:
    colors = brand_colors
    body = "".join(
        f'<p style="margin:0 0 14px;color:{colors["text_primary"]};line-height:1.8;">{escape(text)}</p>'
        for text in paragraphs
        if text
    )
    link_rows = ""
    for link in links or []:
        link_rows += (
            f'<li style="margin:0 0 10px;"><a href="{escape(link["url"], quote=True)}" '
            f'style="color:{colors["gold"]};text-decoration:none;">'
            f'{escape(link.get("fileName") or "تحميل الملف")}</a></li>'
        )
    links_block = (
        f'<ul style="padding:0 18px 0 0;margin:18px 0;">{link_rows}</ul>' if link_rows else ""
    )
    return f"""<!DOCTYPE html>
<html lang="ar" dir="rtl">
  <head><meta charset="utf-8" /><title>{escape(title)}</title></head>
  <body style="margin:0;padding:32px 0;background:{colors["background"]};font-family:Tahoma,Arial,sans-serif;">
    <div style="max-width:560px;margin:0 auto;background:{colors["card"]};border:1px solid {colors["border"]};border-radius:14px;padding:32px;text-align:right;">
      <h1 style="margin:0 0 20px;font-size:22px;color:{colors["gold"]};">{escape(title)}</h1>
      {body}
      {links_block}
      <p style="margin:24px 0 0;font-size:12px;color:{colors["text_muted"]};">{BRAND_NAME}</p>
    </div>
  </body>
</html>"""


class Mailer:
    def __init__(
        self,
        api_key: str,
        sender: str,
        site_url: str = "",
        admin_email: str = "",
    ):
        self.api_key = api_key
        self.sender = sender
        self.site_url = (site_url or "").rstrip("/")
        self.admin_email = admin_email

    @classmethod
    def from_config(cls, config) -> "Mailer":
        return cls(
            api_key=config.get("RESEND_API_KEY", ""),
            sender=config.get("ORDER_SENDER_EMAIL", ""),
            site_url=config.get("SITE_URL", ""),
            admin_email=config.get("ADMIN_NOTIFICATION_EMAIL", ""),
        )

    def send(
        self, recipient: str, subject: str, html: str, text: str
    ) -> Tuple[bool, Optional[str]]:
        if not recipient:
            return False, "Missing recipient email."
        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [recipient],
            "subject": subject,
            "html": html,
            "text": text,
        }
        sent, error = send_email_via_resend(payload, self.api_key)
        if not sent:
            logger.error("Email '%s' to %s failed: %s", subject, recipient, error)
        return sent, error

    def _order_link(self, order_document: Dict) -> str:
        return f"{self.site_url}/orders/{order_document.get('_id')}"

    def send_order_completed(
        self, order_document: Dict, download_links: List[Dict], is_free: bool = False
    ):
        number = order_document.get("order_number")
        name = order_document.get("customer_name") or "عميلنا العزيز"
        if is_free:
            subject = f"تم قبول الطلب المجاني - {number}"
            intro = f"مرحباً {name}، تم قبول طلبك المجاني رقم {number} وأصبحت ملفاتك جاهزة للتحميل."
        else:
            subject = f"تم إكمال الطلب - {number}"
            intro = f"مرحباً {name}، تم إكمال طلبك رقم {number} بنجاح وأصبحت ملفاتك جاهزة للتحميل."
        expiry = order_document.get("download_expiry")
        expiry_text = (
            f"روابط التحميل صالحة حتى {expiry.strftime('%Y-%m-%d')}."
            if isinstance(expiry, datetime)
            else "روابط التحميل صالحة لمدة 30 يوماً."
        )
        html = build_email_html(subject, [intro, expiry_text], download_links)
        text = "\n".join(
            [intro, expiry_text] + [f"{link['fileName']}: {link['url']}" for link in download_links]
        )
        return self.send(order_document.get("customer_email"), subject, html, text)

    def send_customization_processing(self, order_document: Dict):
        number = order_document.get("order_number")
        subject = f"طلبك قيد التخصيص - {number}"
        paragraphs = [
            f"شكراً لك! تم استلام الدفع لطلبك رقم {number}.",
            "يعمل فريقنا الآن على تنفيذ التخصيصات المطلوبة وسنرسل لك الملفات فور جاهزيتها.",
            f"يمكنك متابعة حالة الطلب من خلال: {self._order_link(order_document)}",
        ]
        return self.send(
            order_document.get("customer_email"),
            subject,
            build_email_html(subject, paragraphs),
            "\n".join(paragraphs),
        )

    def send_free_order_under_review(self, order_document: Dict):
        number = order_document.get("order_number")
        subject = f"طلبك المجاني قيد المراجعة - {number}"
        paragraphs = [
            f"تم استلام طلبك المجاني رقم {number} وهو الآن قيد المراجعة من قبل فريقنا.",
            "سنرسل لك رسالة أخرى تحتوي على روابط التحميل فور قبول الطلب.",
        ]
        return self.send(
            order_document.get("customer_email"),
            subject,
            build_email_html(subject, paragraphs),
            "\n".join(paragraphs),
        )

    def send_order_cancelled(
        self, order_document: Dict, reason: str = "", refund_amount: Optional[float] = None
    ):
        number = order_document.get("order_number")
        subject = f"تم إلغاء الطلب - {number}"
        paragraphs = [f"نأسف لإبلاغك بأنه تم إلغاء طلبك رقم {number}."]
        if reason:
            paragraphs.append(f"السبب: {reason}")
        if refund_amount:
            paragraphs.append(
                f"تم استرداد مبلغ ${refund_amount:.2f} إلى حسابك في PayPal، وقد يستغرق ظهوره بضعة أيام."
            )
        return self.send(
            order_document.get("customer_email"),
            subject,
            build_email_html(subject, paragraphs),
            "\n".join(paragraphs),
        )

    def send_custom_message(self, order_document: Dict, subject: str, message: str):
        number = order_document.get("order_number")
        full_subject = f"{subject} - {number}" if number else subject
        paragraphs = [line for line in str(message or "").splitlines() if line.strip()]
        return self.send(
            order_document.get("customer_email"),
            full_subject,
            build_email_html(subject, paragraphs),
            message,
        )

    def send_admin_new_order(self, order_document: Dict):
        if not self.admin_email:
            return False, "Admin notification email is not configured."
        number = order_document.get("order_number")
        item_lines = [
            f"{item.get('product_name')} x{item.get('quantity')} (${float(item.get('total_price') or 0):.2f})"
            for item in order_document.get("items") or []
        ]
        subject = f"New paid order - {number}"
        paragraphs = [
            f"Order {number} from {order_document.get('customer_email')} was paid.",
            f"Total: ${float(order_document.get('total_price') or 0):.2f}",
            *item_lines,
        ]
        return self.send(
            self.admin_email, subject, build_email_html(subject, paragraphs), "\n".join(paragraphs)
        )
