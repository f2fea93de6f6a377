import logging
from urllib.parse import urlencode

from django.conf import settings
from django.core.exceptions import ValidationError
from django.http import HttpRequest, HttpResponseRedirect, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from accounts.context import require_admin
from core.exceptions import Unauthorized
from core.http import clean_form, json_view, parse_json_body

from . import services
from .forms import ChargeForm, PaymentCreateForm
from .models import Payment, PaymentWebhookLog
from .univapay import UnivaPayClient, validate_webhook_auth


logger = logging.getLogger(__name__)

REDIRECT_PARAMS = (
    ("univapayChargeId", ("univapayChargeId", "charge_id")),
    ("univapayTokenId", ("univapayTokenId", "token_id")),
    ("status", ("status",)),
    ("paymentId", ("paymentId", "payment_id")),
)


def _credentials_json(membership) -> dict | None:
    password = getattr(membership, "issued_password", None) if membership else None
    if not password:
        return None
    return {
        "email": membership.user.email,
        "username": membership.username,
        "password": password,
        "accessExpiresAt": membership.access_expires_at,
    }


def _payment_json(payment: Payment) -> dict:
    return {
        "id": str(payment.pk),
        "planType": payment.plan_type,
        "paymentMethod": payment.payment_method,
        "amount": payment.amount,
        "taxAmount": payment.tax_amount,
        "totalAmount": payment.total_amount,
        "status": payment.status,
        "name": payment.name,
        "email": payment.email,
        "phoneNumber": payment.phone_number,
        "companyName": payment.company_name,
        "postalCode": payment.postal_code,
        "address": payment.address,
        "seller": payment.seller,
        "univapayOrderId": payment.gateway_order_id,
        "univapayTransactionId": payment.gateway_transaction_id,
        "createdAt": payment.created_at,
        "updatedAt": payment.updated_at,
    }


@require_POST
@json_view
def create_payment(request: HttpRequest):
    data = clean_form(PaymentCreateForm, parse_json_body(request))

    if data["paymentMethod"] == Payment.Method.DIRECT_DEBIT:
        raise ValidationError("口座引き落とし決済は現在利用できません")

    payment = services.create_payment(
        plan_type=data["planType"],
        amount=data["amount"],
        tax_amount=data["taxAmount"],
        total_amount=data.get("totalAmount"),
        payment_method=data["paymentMethod"],
        seller=data.get("seller") or "",
        customer_info={
            "name": data["name"],
            "email": data["email"],
            "phone_number": data["phoneNumber"],
            "company_name": data.get("companyName") or "",
            "postal_code": data.get("postalCode") or "",
            "address": data.get("address") or "",
        },
        user=request.user if request.user.is_authenticated else None,
    )

    if payment.payment_method == Payment.Method.BANK_TRANSFER:
        payment = services.record_gateway_result(payment.pk, "completed")
        return JsonResponse(
            {
                "paymentId": str(payment.pk),
                "status": payment.status,
                "message": "銀行振込の案内をメールでお送りします",
                "credentials": _credentials_json(payment.issued_membership),
            }
        )

    return JsonResponse(
        {
            "paymentId": str(payment.pk),
            "status": payment.status,
            "message": "クレジットカード決済を開始します",
        }
    )


@require_POST
@json_view
def charge(request: HttpRequest):
    data = clean_form(ChargeForm, parse_json_body(request))
    payment = services.get_payment(data["paymentId"])

    if payment.payment_method != Payment.Method.CREDIT_CARD:
        raise ValidationError("Payment method is not credit card")
    if payment.status != Payment.Status.PENDING:
        raise ValidationError(f"Payment is already {payment.status}")

    result = UnivaPayClient.from_settings().create_charge(
        transaction_token_id=data["transaction_token_id"],
        amount=int(payment.total_amount),
        currency=settings.UNIVAPAY_CURRENCY,
        metadata={
            "payment_id": str(payment.pk),
            "plan_type": payment.plan_type,
            "customer_name": payment.name,
            "customer_email": payment.email,
        },
        redirect_endpoint=data.get("redirect_endpoint") or None,
    )

    charge_id = str(result.get("id") or "")
    payment = services.record_gateway_result(
        payment.pk,
        result.get("status"),
        gateway_order_id=charge_id or None,
        gateway_transaction_id=charge_id or None,
    )

    redirect = result.get("redirect") if isinstance(result.get("redirect"), dict) else None
    return JsonResponse(
        {
            "ok": True,
            "payment": {"id": str(payment.pk), "status": payment.status},
            "univapay": {
                "charge_id": charge_id or None,
                "status": result.get("status"),
                "mode": result.get("mode"),
                "redirect": {"endpoint": redirect.get("endpoint") or redirect.get("url")} if redirect else None,
            },
            "credentials": _credentials_json(payment.issued_membership),
        }
    )


def _redirect_back(request: HttpRequest):
    params = {}
    for target, sources in REDIRECT_PARAMS:
        for source in sources:
            value = request.GET.get(source)
            if value:
                params[target] = value
                break
    url = settings.PAYMENT_RETURN_URL
    if params:
        url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
    return HttpResponseRedirect(url)


@csrf_exempt
@require_http_methods(["GET", "POST"])
@json_view
def callback(request: HttpRequest):
    if request.method == "GET":
        return _redirect_back(request)

    if not settings.UNIVAPAY_WEBHOOK_AUTH:
        logger.warning("UNIVAPAY_WEBHOOK_AUTH is not set, accepting unauthenticated webhook")
    elif not validate_webhook_auth(request.headers.get("Authorization", "")):
        raise Unauthorized("Unauthorized webhook")

    body = parse_json_body(request)
    PaymentWebhookLog.objects.create(payload=body)

    event = services.extract_gateway_event(body)
    logger.info(
        "UnivaPay webhook: event=%s status=%s charge=%s subscription=%s payment=%s",
        event.event_type,
        event.status,
        event.charge_id,
        event.subscription_id,
        event.payment_id,
    )

    payment, lookup = services.find_payment_for_gateway_event(
        payment_id=event.payment_id,
        charge_id=event.charge_id,
        subscription_id=event.subscription_id,
    )
    if payment is None:
        logger.warning("UnivaPay webhook: payment not found (charge=%s subscription=%s)", event.charge_id, event.subscription_id)
        return JsonResponse({"ok": True, "message": "payment not found"})

    gateway_id = event.charge_id or event.subscription_id or None
    payment = services.record_gateway_result(
        payment.pk,
        event.status,
        gateway_transaction_id=gateway_id if not payment.gateway_transaction_id else None,
    )
    logger.info("UnivaPay webhook: payment %s found by %s, now %s", payment.pk, lookup, payment.status)

    return JsonResponse({"ok": True, "paymentId": str(payment.pk), "status": payment.status})


@require_GET
@json_view
def verify(request: HttpRequest):
    payment_id = (request.GET.get("paymentId") or "").strip()
    if not payment_id:
        raise ValidationError("Payment ID is required")
    result = services.verify(payment_id)
    return JsonResponse(
        {
            "paymentId": result["payment_id"],
            "status": result["status"],
            "isCompleted": result["is_completed"],
            "hasMembership": result["has_membership"],
        }
    )


@require_GET
@json_view
def payments_by_plan(request: HttpRequest, plan: str):
    require_admin(request.caller)
    rows = services.get_by_plan(plan)
    return JsonResponse({"payments": [_payment_json(p) for p in rows]})
