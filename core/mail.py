import logging
import smtplib

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.utils import timezone
from django.utils.html import escape, linebreaks

from .exceptions import ExternalServiceError


logger = logging.getLogger(__name__)

BRAND = "12SKINS"
FOOTER = "Copyright © 株式会社美容総研 All Rights Reserved."


def send_email(*, to: str, subject: str, text: str, html: str | None = None) -> None:
    """Send one transactional email.

    Transport failures surface as ExternalServiceError; the caller decides
    whether that is fatal.
    """
    to = (to or "").strip()
    if not to:
        raise ExternalServiceError("Recipient address is empty")

    message = EmailMultiAlternatives(
        subject=subject,
        body=text,
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[to],
    )
    message.attach_alternative(html or linebreaks(escape(text)), "text/html")

    try:
        message.send(fail_silently=False)
    except (smtplib.SMTPException, OSError) as exc:
        raise ExternalServiceError(f"Failed to send email to {to}: {exc}") from exc
    logger.info("Email %r sent to %s", subject, to)


def _fmt_date(value) -> str:
    if not value:
        return "未設定"
    return timezone.localtime(value).strftime("%Y年%m月%d日")


def send_credentials_email(*, name: str, email: str, username: str, password: str, expires_at) -> None:
    login_url = f"{settings.SITE_BASE_URL}/login"
    months = settings.MEMBERSHIP_VALIDITY_MONTHS
    text = (
        f"{BRAND}会員サイトへのアクセス情報\n\n"
        f"{name}様\n\n"
        "お支払いありがとうございます。\n"
        "会員サイトへのアクセス情報をお送りいたします。\n\n"
        "【会員サイトアクセス情報】\n"
        f"ユーザーID: {username}\n"
        f"パスワード: {password}\n\n"
        f"会員サイトURL: {login_url}\n"
        f"有効期限: {_fmt_date(expires_at)}\n\n"
        f"※この認証情報は{months}ヶ月間有効です。\n"
        "※このメールは自動送信されています。返信はできません。\n\n"
        f"{FOOTER}\n"
    )
    send_email(to=email, subject=f"{BRAND}会員サイトへのアクセス情報", text=text)


def send_expiration_reminder_email(*, name: str, email: str, expires_at) -> None:
    text = (
        f"{name}様\n\n"
        f"いつも{BRAND}をご利用いただきありがとうございます。\n\n"
        f"ご利用中の会員権限は {_fmt_date(expires_at)} に有効期限を迎えます。\n"
        "引き続きご利用いただく場合は、期限までに更新のお手続きをお願いいたします。\n\n"
        f"更新はこちら: {settings.SITE_BASE_URL}/pricing\n\n"
        f"{FOOTER}\n"
    )
    send_email(to=email, subject=f"【{BRAND}】会員権限の有効期限が近づいています", text=text)
