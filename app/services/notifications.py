"""
Purchase confirmation email.

Fire-and-forget: a flaky mail server must never block a completed purchase,
so every failure is logged and reported as False.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)

SUBJECTS = {
    ("tr", "online"): "{title} - Kurs Satın Alma Onayı",
    ("tr", "live"): "{title} - Canlı Eğitim Onayı",
    ("en", "online"): "{title} - Course Purchase Confirmation",
    ("en", "live"): "{title} - Live Training Confirmation",
}

BODIES = {
    "tr": (
        "Sayın {name},\n\n"
        "MyUNI'yi tercih ettiğiniz için teşekkürler.\n"
        "{title} kaydınız tamamlandı.\n\n"
        "Sipariş numarası: {order_id}\n"
        "Tutar: {amount}\n\n"
        "Kursa erişmek için: {course_url}\n"
    ),
    "en": (
        "Dear {name},\n\n"
        "Thank you for choosing MyUNI.\n"
        "Your enrollment in {title} is complete.\n\n"
        "Order number: {order_id}\n"
        "Amount: {amount}\n\n"
        "Access your course: {course_url}\n"
    ),
}


def build_purchase_confirmation(
    email: str,
    name: str,
    course_title: str,
    course_slug: Optional[str],
    order_id: str,
    amount: str,
    locale: str = "tr",
    course_type: str = "online",
    is_free: bool = False,
) -> EmailMessage:
    lang = "en" if locale == "en" else "tr"
    kind = "live" if course_type == "live" else "online"
    path = "course" if lang == "en" else "kurs"
    course_url = f"{settings.base_url.rstrip('/')}/{lang}/{path}/{course_slug or ''}"

    if is_free:
        amount = "Ücretsiz" if lang == "tr" else "Free"

    msg = EmailMessage()
    msg["Subject"] = SUBJECTS[(lang, kind)].format(title=course_title)
    msg["From"] = settings.smtp_from
    msg["To"] = email
    msg.set_content(BODIES[lang].format(
        name=name or email.split("@")[0],
        title=course_title,
        order_id=order_id,
        amount=amount,
        course_url=course_url,
    ))
    return msg


def send_purchase_confirmation(
    email: Optional[str],
    name: str,
    course_title: str,
    course_slug: Optional[str],
    order_id: str,
    amount: str,
    locale: str = "tr",
    course_type: str = "online",
    is_free: bool = False,
) -> bool:
    """Send the confirmation. Returns True if the mail server accepted it."""
    if not email:
        logger.info("Purchase confirmation skipped for order %s (no email)", order_id)
        return False

    if not settings.email_enabled or not settings.smtp_user:
        logger.info("Purchase confirmation skipped for %s (email disabled)", email)
        return False

    try:
        msg = build_purchase_confirmation(
            email, name, course_title, course_slug, order_id, amount, locale, course_type, is_free,
        )
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as server:
            if settings.smtp_use_tls:
                server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
    except Exception as e:
        logger.error("Purchase confirmation for order %s failed: %s", order_id, e)
        return False

    logger.info("Purchase confirmation sent to %s for order %s", email, order_id)
    return True
