from __future__ import annotations

import hmac
import logging
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from time import monotonic

from django.conf import settings
from django.contrib.auth.hashers import make_password
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.crypto import get_random_string

from accounts.services import create_purchaser_account, generate_password, get_user_by_email
from core.exceptions import (
    AlreadyProvisionedError,
    ExternalServiceError,
    NotFoundError,
    PaymentNotCompletedError,
    Unauthorized,
)
from core.mail import send_credentials_email, send_expiration_reminder_email
from payments.models import Payment
from payments.services import correct_payment_status, get_payment

from .models import Membership


logger = logging.getLogger(__name__)

USERNAME_PREFIX = "user_"
HEX_CHARS = "0123456789abcdef"


def _add_months(dt, months: int):
    idx = (dt.month - 1) + months
    year = dt.year + (idx // 12)
    month = (idx % 12) + 1
    day = min(dt.day, monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def generate_username() -> str:
    while True:
        username = f"{USERNAME_PREFIX}{get_random_string(8, allowed_chars=HEX_CHARS)}"
        if not Membership.objects.filter(username=username).exists():
            return username


def get_for_user(user_id) -> Membership | None:
    if not user_id:
        return None
    return Membership.objects.filter(user_id=user_id).order_by("-access_granted_at", "-pk").first()


def get_for_payment(payment_id) -> Membership | None:
    try:
        return Membership.objects.filter(payment_id=payment_id).first()
    except (ValueError, ValidationError):
        return None


def _resolve_user(payment: Payment, *, username: str, password: str):
    if payment.user_id:
        return payment.user
    user = get_user_by_email(payment.email)
    if user is None:
        user = create_purchaser_account(email=payment.email, name=payment.name, username=username, password=password)
        logger.info("Created account #%s for payment %s", user.pk, payment.pk)
    payment.user = user
    payment.save(update_fields=["user", "updated_at"])
    return user


def _deliver_credentials(membership: Membership, password: str) -> None:
    user = membership.user
    try:
        send_credentials_email(
            name=user.name or membership.payment.name,
            email=user.email or membership.payment.email,
            username=membership.username,
            password=password,
            expires_at=membership.access_expires_at,
        )
    except ExternalServiceError as exc:
        logger.warning(
            "Credentials email for membership #%s (%s) failed: %s",
            membership.pk,
            user.email,
            exc.message,
        )
        return

    sent_at = timezone.now()
    Membership.objects.filter(pk=membership.pk).update(credentials_sent_at=sent_at)
    membership.credentials_sent_at = sent_at


def provision(payment_id, *, now=None) -> Membership:
    """Grant member-site access for a completed payment.

    Exactly one membership exists per payment: a second call raises
    AlreadyProvisionedError, whether it loses the pre-check or the insert.
    The credentials email goes out once the transaction commits. The plaintext
    password is returned as ``membership.issued_password`` and never stored.
    """
    now = now or timezone.now()

    with transaction.atomic():
        payment = get_payment(payment_id, for_update=True)
        if not payment.is_completed:
            raise PaymentNotCompletedError(f"Payment {payment.pk} is {payment.status}")
        if Membership.objects.filter(payment=payment).exists():
            raise AlreadyProvisionedError()

        username = generate_username()
        password = generate_password()
        user = _resolve_user(payment, username=username, password=password)

        try:
            with transaction.atomic():
                membership = Membership.objects.create(
                    user=user,
                    payment=payment,
                    username=username,
                    password_hash=make_password(password),
                    access_granted_at=now,
                    access_expires_at=_add_months(now, settings.MEMBERSHIP_VALIDITY_MONTHS),
                    is_active=True,
                )
        except IntegrityError:
            if Membership.objects.filter(payment=payment).exists():
                raise AlreadyProvisionedError()
            raise

        transaction.on_commit(lambda: _deliver_credentials(membership, password))

    logger.info(
        "Provisioned membership #%s for payment %s (user #%s, expires %s)",
        membership.pk,
        payment.pk,
        user.pk,
        membership.access_expires_at.isoformat(),
    )
    membership.issued_password = password
    return membership


def check_and_expire(user_id, now=None) -> bool:
    """Return whether the user currently holds an active membership.

    A membership found past its expiry is switched off on the spot; calling
    again does not write.
    """
    membership = get_for_user(user_id)
    if membership is None:
        return False

    now = now or timezone.now()
    if membership.access_expires_at is None:
        return bool(settings.MEMBERSHIP_MISSING_EXPIRY_ACTIVE and membership.is_active)

    if membership.is_expired(now):
        if membership.is_active:
            updated = Membership.objects.filter(pk=membership.pk, is_active=True).update(is_active=False, updated_at=now)
            if updated:
                logger.info("Membership #%s of user #%s expired at %s", membership.pk, user_id, membership.access_expires_at)
        return False

    return membership.is_active


def get_memberships_expiring_soon(now=None) -> list[tuple[Membership, object]]:
    """Active memberships whose expiry falls exactly MEMBERSHIP_REMINDER_DAYS
    local days from today."""
    now = now or timezone.now()
    target = timezone.localdate(now) + timedelta(days=settings.MEMBERSHIP_REMINDER_DAYS)
    tz = timezone.get_current_timezone()
    day_start = timezone.make_aware(datetime.combine(target, time.min), tz)
    day_end = timezone.make_aware(datetime.combine(target + timedelta(days=1), time.min), tz)

    rows = (
        Membership.objects
        .select_related("user")
        .filter(is_active=True, access_expires_at__gte=day_start, access_expires_at__lt=day_end)
        .order_by("access_expires_at", "pk")
    )
    return [(m, m.user) for m in rows]


@dataclass
class ReminderReport:
    total: int = 0
    success_count: int = 0
    failure_count: int = 0
    errors: list[dict] = field(default_factory=list)
    duration_ms: int = 0


def send_expiration_reminders(now=None) -> ReminderReport:
    started = monotonic()
    logger.info("Expiration reminder job started")

    pairs = get_memberships_expiring_soon(now)
    report = ReminderReport(total=len(pairs))
    logger.info("%d memberships expire in %d days", report.total, settings.MEMBERSHIP_REMINDER_DAYS)

    for membership, user in pairs:
        try:
            send_expiration_reminder_email(
                name=user.name or user.email,
                email=user.email,
                expires_at=membership.access_expires_at,
            )
        except Exception as exc:
            # one bad recipient must not stop the batch
            report.failure_count += 1
            message = getattr(exc, "message", "") or str(exc)
            report.errors.append({"email": user.email, "error": message})
            logger.warning("Reminder to %s failed: %s", user.email, message)
        else:
            report.success_count += 1
            logger.info("Reminder sent to %s", user.email)

    report.duration_ms = int((monotonic() - started) * 1000)
    logger.info(
        "Expiration reminder job finished: sent=%d failed=%d in %dms",
        report.success_count,
        report.failure_count,
        report.duration_ms,
    )
    return report


def authorize_cron(auth_header: str) -> None:
    secret = settings.CRON_SECRET or ""
    if not secret:
        logger.warning("CRON_SECRET is not set, reminder job runs unauthenticated")
        return

    header = (auth_header or "").strip()
    token = header[len("Bearer "):] if header.startswith("Bearer ") else header
    if not hmac.compare_digest(token.encode(), secret.encode()):
        logger.warning("Cron authentication failed (expected length %d, received %d)", len(secret), len(token))
        raise Unauthorized()


def get_membership(membership_id) -> Membership:
    membership = Membership.objects.select_related("user", "payment").filter(pk=membership_id).first()
    if not membership:
        raise NotFoundError("会員権限が見つかりません")
    return membership


def set_membership_active(membership_id, is_active: bool) -> Membership:
    """Administrative switch; the next sweep still applies the expiry."""
    membership = get_membership(membership_id)
    if membership.is_active != bool(is_active):
        membership.is_active = bool(is_active)
        membership.save(update_fields=["is_active", "updated_at"])
        logger.info("Membership #%s set is_active=%s by admin", membership.pk, membership.is_active)
    return membership


def set_membership_expiration(user_id, new_expires_at) -> Membership:
    membership = get_for_user(user_id)
    if membership is None:
        raise NotFoundError("会員権限が見つかりません")
    if timezone.is_naive(new_expires_at):
        new_expires_at = timezone.make_aware(new_expires_at)
    if new_expires_at < membership.access_granted_at:
        raise ValidationError("有効期限は付与日時より後の日時を指定してください")

    membership.access_expires_at = new_expires_at
    membership.save(update_fields=["access_expires_at", "updated_at"])
    logger.info("Membership #%s expiry moved to %s by admin", membership.pk, new_expires_at.isoformat())
    return membership


@transaction.atomic
def admin_create_account(payment_id) -> Membership:
    """Complete a payment by hand and provision its membership."""
    payment = get_payment(payment_id, for_update=True)
    if Membership.objects.filter(payment=payment).exists():
        raise AlreadyProvisionedError("この支払いには既に会員権限が作成されています")
    if not payment.is_completed:
        correct_payment_status(payment.pk, Payment.Status.COMPLETED)
    return provision(payment.pk)
