from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import transaction

from core.exceptions import AlreadyProvisionedError, NotFoundError

from .models import Payment


logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")

# UnivaPay charge/subscription statuses -> Payment.Status
GATEWAY_STATUS_MAP = {
    "successful": Payment.Status.COMPLETED,
    "paid": Payment.Status.COMPLETED,
    "completed": Payment.Status.COMPLETED,
    "succeeded": Payment.Status.COMPLETED,
    "failed": Payment.Status.FAILED,
    "error": Payment.Status.FAILED,
    "declined": Payment.Status.FAILED,
    "cancelled": Payment.Status.CANCELLED,
    "canceled": Payment.Status.CANCELLED,
}

REQUIRED_CUSTOMER_FIELDS = {
    "name": "氏名を入力してください",
    "email": "メールアドレスを入力してください",
    "phone_number": "電話番号を入力してください",
}


@dataclass(frozen=True)
class GatewayEvent:
    event_type: str
    status: str
    charge_id: str
    subscription_id: str
    payment_id: str


def map_gateway_status(gateway_status) -> str | None:
    return GATEWAY_STATUS_MAP.get(str(gateway_status or "").strip().lower())


def _money(value, field_label: str) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(MONEY)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_label}が正しくありません")
    if amount < 0:
        raise ValidationError(f"{field_label}が正しくありません")
    return amount


def _clean(value) -> str:
    return str(value or "").strip()


def _as_uuid(payment_id) -> uuid.UUID | None:
    if isinstance(payment_id, uuid.UUID):
        return payment_id
    try:
        return uuid.UUID(str(payment_id))
    except (TypeError, ValueError, AttributeError):
        return None


def get_payment(payment_id, *, for_update: bool = False) -> Payment:
    pk = _as_uuid(payment_id)
    qs = Payment.objects
    if for_update:
        qs = qs.select_for_update()
    payment = qs.filter(pk=pk).first() if pk else None
    if not payment:
        raise NotFoundError("支払い情報が見つかりません")
    return payment


def create_payment(
    *,
    plan_type: str,
    amount,
    tax_amount,
    customer_info: dict,
    payment_method: str,
    total_amount=None,
    seller: str = "",
    user=None,
) -> Payment:
    if plan_type not in Payment.PlanType.values:
        raise ValidationError("無効なプランです")
    if payment_method not in Payment.Method.values:
        raise ValidationError("無効な支払い方法です")

    customer_info = customer_info or {}
    for field, message in REQUIRED_CUSTOMER_FIELDS.items():
        if not _clean(customer_info.get(field)):
            raise ValidationError(message)
    email = _clean(customer_info.get("email")).lower()
    try:
        validate_email(email)
    except ValidationError:
        raise ValidationError("有効なメールアドレスを入力してください")

    base = _money(amount, "金額")
    tax = _money(tax_amount, "消費税額")
    total = _money(total_amount, "合計金額") if total_amount is not None else base + tax

    payment = Payment.objects.create(
        user=user if user is not None and getattr(user, "pk", None) else None,
        plan_type=plan_type,
        amount=base,
        tax_amount=tax,
        total_amount=total,
        payment_method=payment_method,
        status=Payment.Status.PENDING,
        name=_clean(customer_info.get("name")),
        email=email,
        phone_number=_clean(customer_info.get("phone_number")),
        company_name=_clean(customer_info.get("company_name")),
        postal_code=_clean(customer_info.get("postal_code")),
        address=_clean(customer_info.get("address")),
        seller=_clean(seller),
    )
    logger.info("Payment %s created: plan=%s method=%s total=%s", payment.pk, plan_type, payment_method, total)
    return payment


def _ensure_membership(payment: Payment):
    """Provision the membership of a completed payment unless it exists.

    Returns the new membership, or None when it was already provisioned.
    """
    from memberships.services import provision

    try:
        return provision(payment.pk)
    except AlreadyProvisionedError:
        logger.info("Payment %s already has a membership", payment.pk)
        return None


def record_gateway_result(
    payment_id,
    gateway_status,
    gateway_order_id: str | None = None,
    gateway_transaction_id: str | None = None,
) -> Payment:
    """Apply a gateway confirmation to a payment.

    Only a pending payment changes status; terminal statuses are final here
    (see correct_payment_status for administrative corrections), and a
    terminal payment keeps the gateway ids it already has. A completed
    payment always ends with exactly one membership, however often the same
    confirmation is replayed. A membership created by this call is exposed as
    ``payment.issued_membership`` (None otherwise).
    """
    new_status = map_gateway_status(gateway_status)

    with transaction.atomic():
        payment = get_payment(payment_id, for_update=True)
        update_fields = []

        for field, value in (("gateway_order_id", gateway_order_id), ("gateway_transaction_id", gateway_transaction_id)):
            stored = getattr(payment, field)
            if not value or stored == str(value):
                continue
            if payment.is_terminal and stored:
                logger.warning("Payment %s: ignoring %s %r, %s payment keeps %r", payment.pk, field, value, payment.status, stored)
                continue
            setattr(payment, field, str(value))
            update_fields.append(field)

        if new_status and new_status != payment.status:
            if not payment.is_terminal:
                logger.info("Payment %s: %s -> %s (gateway status %r)", payment.pk, payment.status, new_status, gateway_status)
                payment.status = new_status
                update_fields.append("status")
            else:
                logger.warning(
                    "Payment %s: ignoring gateway status %r, payment is already %s",
                    payment.pk,
                    gateway_status,
                    payment.status,
                )
        elif not new_status:
            logger.info("Payment %s: gateway status %r does not change the payment", payment.pk, gateway_status)

        if update_fields:
            update_fields.append("updated_at")
            payment.save(update_fields=update_fields)

    payment.issued_membership = _ensure_membership(payment) if payment.is_completed else None
    return payment


@transaction.atomic
def correct_payment_status(payment_id, status: str) -> Payment:
    """Administrative override of a payment status, terminal states included."""
    if status not in Payment.Status.values:
        raise ValidationError("無効なステータスです")
    payment = get_payment(payment_id, for_update=True)
    if payment.status != status:
        logger.warning("Payment %s: administrative correction %s -> %s", payment.pk, payment.status, status)
        payment.status = status
        payment.save(update_fields=["status", "updated_at"])
    return payment


def get_by_plan(plan_type: str) -> list[Payment]:
    if plan_type not in Payment.PlanType.values:
        raise ValidationError("Invalid plan type")
    return list(Payment.objects.filter(plan_type=plan_type).order_by("-created_at"))


def verify(payment_id) -> dict:
    payment = get_payment(payment_id)
    return {
        "payment_id": str(payment.pk),
        "status": payment.status,
        "is_completed": payment.is_completed,
        "has_membership": hasattr(payment, "membership"),
    }


def extract_gateway_event(body: dict) -> GatewayEvent:
    """Pull identifiers and status out of the several webhook payload shapes."""
    data = body.get("data") if isinstance(body.get("data"), dict) else body
    obj = _clean(body.get("object"))

    charge_id = ""
    subscription_id = ""
    if obj in ("charge", "charges"):
        charge_id = _clean(body.get("id") or data.get("id") or body.get("charge_id"))
    elif obj in ("subscription", "subscriptions"):
        subscription_id = _clean(body.get("id") or data.get("id") or body.get("subscription_id"))
    else:
        charge = body.get("charge") if isinstance(body.get("charge"), dict) else {}
        subscription = body.get("subscription") if isinstance(body.get("subscription"), dict) else {}
        charge_id = _clean(charge.get("id") or data.get("charge_id") or body.get("chargeId"))
        subscription_id = _clean(subscription.get("id") or data.get("subscription_id") or body.get("subscriptionId"))

    metadata = body.get("metadata") or data.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    return GatewayEvent(
        event_type=_clean(body.get("event") or body.get("type")),
        status=_clean(body.get("status") or data.get("status") or body.get("state")),
        charge_id=charge_id,
        subscription_id=subscription_id,
        payment_id=_clean(metadata.get("payment_id")),
    )


def find_payment_for_gateway_event(*, payment_id="", charge_id="", subscription_id="") -> tuple[Payment | None, str]:
    """Resolve the payment of a webhook event; returns (payment, lookup used)."""
    if payment_id:
        pk = _as_uuid(payment_id)
        payment = Payment.objects.filter(pk=pk).first() if pk else None
        if payment:
            return payment, "metadata.payment_id"
    if charge_id:
        payment = Payment.objects.filter(gateway_transaction_id=charge_id).first()
        if payment:
            return payment, "gateway_transaction_id"
        payment = Payment.objects.filter(gateway_order_id=charge_id).first()
        if payment:
            return payment, "gateway_order_id"
    if subscription_id:
        payment = Payment.objects.filter(gateway_transaction_id=subscription_id).first()
        if payment:
            return payment, "subscription_id"
    return None, ""
