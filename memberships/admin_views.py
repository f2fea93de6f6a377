from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.db import transaction
from django.db.models import Count, Q, Sum
from django.http import HttpRequest, JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from accounts.context import require_admin
from core.exceptions import NotFoundError
from core.http import json_view, parse_json_body
from payments.models import Payment
from payments.services import correct_payment_status, get_payment

from . import services
from .models import Membership


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
DASHBOARD_WINDOW_DAYS = 30
ZERO = Decimal("0.00")


def _safe_int(v: str | None, default: int) -> int:
    try:
        return int(v) if v is not None else default
    except (TypeError, ValueError):
        return default


def _subscription_json(payment: Payment) -> dict:
    membership = getattr(payment, "membership", None)
    user = payment.user
    return {
        "paymentId": str(payment.pk),
        "planType": payment.plan_type,
        "amount": payment.amount,
        "taxAmount": payment.tax_amount,
        "totalAmount": payment.total_amount,
        "paymentMethod": payment.payment_method,
        "status": payment.status,
        "customerName": payment.name,
        "customerEmail": payment.email,
        "customerPhone": payment.phone_number,
        "companyName": payment.company_name,
        "postalCode": payment.postal_code,
        "address": payment.address,
        "seller": payment.seller,
        "univapayOrderId": payment.gateway_order_id,
        "univapayTransactionId": payment.gateway_transaction_id,
        "createdAt": payment.created_at,
        "updatedAt": payment.updated_at,
        "user": {"id": user.pk, "email": user.email, "name": user.name} if user else None,
        "membership": membership.as_summary() if membership else None,
    }


def _payment_with_membership(payment_id) -> Payment:
    payment = get_payment(payment_id)
    return Payment.objects.select_related("user", "membership").get(pk=payment.pk)


@require_GET
@json_view
def subscriptions(request: HttpRequest):
    require_admin(request.caller)

    qs = Payment.objects.select_related("user", "membership").order_by("-created_at")
    status = (request.GET.get("status") or "").strip()
    plan_type = (request.GET.get("planType") or "").strip()
    seller = (request.GET.get("seller") or "").strip()
    search = (request.GET.get("search") or "").strip()
    if status:
        qs = qs.filter(status=status)
    if plan_type:
        qs = qs.filter(plan_type=plan_type)
    if seller:
        qs = qs.filter(seller=seller)
    if search:
        qs = qs.filter(Q(name__icontains=search) | Q(email__icontains=search) | Q(phone_number__icontains=search))

    page_size = min(max(_safe_int(request.GET.get("pageSize"), DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    paginator = Paginator(qs, page_size)
    page = paginator.get_page(_safe_int(request.GET.get("page"), 1))

    return JsonResponse(
        {
            "subscriptions": [_subscription_json(p) for p in page.object_list],
            "pagination": {
                "page": page.number,
                "pageSize": page_size,
                "total": paginator.count,
                "totalPages": paginator.num_pages,
            },
        }
    )


@require_http_methods(["GET", "PATCH"])
@json_view
def subscription_detail(request: HttpRequest, payment_id: str):
    require_admin(request.caller)
    payment = _payment_with_membership(payment_id)

    if request.method == "PATCH":
        body = parse_json_body(request)
        if "isActive" not in body and "status" not in body:
            raise ValidationError("更新する項目がありません")

        with transaction.atomic():
            if "status" in body:
                correct_payment_status(payment.pk, str(body["status"]))
            if "isActive" in body:
                if not isinstance(body["isActive"], bool):
                    raise ValidationError("isActive must be a boolean")
                membership = getattr(payment, "membership", None)
                if membership is None:
                    raise NotFoundError("会員権限が見つかりません")
                services.set_membership_active(membership.pk, body["isActive"])

        payment = _payment_with_membership(payment.pk)

    return JsonResponse({"subscription": _subscription_json(payment)})


@require_POST
@json_view
def create_account(request: HttpRequest, payment_id: str):
    require_admin(request.caller)
    membership = services.admin_create_account(payment_id)
    return JsonResponse(
        {
            "message": "アカウントと会員権限を作成しました",
            "user": {"email": membership.user.email},
            "membership": {
                "username": membership.username,
                "password": membership.issued_password,
                "accessExpiresAt": membership.access_expires_at,
            },
        }
    )


@require_GET
@json_view
def dashboard(request: HttpRequest):
    require_admin(request.caller)
    now = timezone.now()
    window_start = now - timedelta(days=DASHBOARD_WINDOW_DAYS)
    window_end = now + timedelta(days=DASHBOARD_WINDOW_DAYS)

    completed = Payment.objects.filter(status=Payment.Status.COMPLETED)
    revenue = completed.filter(created_at__gte=window_start).aggregate(total=Sum("total_amount"), count=Count("id"))

    payment_stats = Payment.objects.values("status").annotate(count=Count("id")).order_by("status")
    plan_stats = completed.values("plan_type").annotate(count=Count("id"), total=Sum("total_amount")).order_by("plan_type")
    recent = Payment.objects.order_by("-created_at")[:10]
    expiring = (
        Membership.objects
        .filter(is_active=True, access_expires_at__gte=now, access_expires_at__lte=window_end)
        .order_by("access_expires_at")[:10]
    )

    return JsonResponse(
        {
            "stats": {
                "totalUsers": get_user_model().objects.count(),
                "totalPayments": Payment.objects.count(),
                "totalMemberships": Membership.objects.count(),
                "activeMemberships": Membership.objects.filter(is_active=True).count(),
                "revenueLast30Days": revenue["total"] or ZERO,
                "paymentCountLast30Days": revenue["count"],
            },
            "paymentStats": [{"status": row["status"], "count": row["count"]} for row in payment_stats],
            "planStats": [
                {"planType": row["plan_type"], "count": row["count"], "totalAmount": row["total"] or ZERO}
                for row in plan_stats
            ],
            "recentPayments": [
                {
                    "id": str(p.pk),
                    "customerName": p.name,
                    "planType": p.plan_type,
                    "totalAmount": p.total_amount,
                    "status": p.status,
                    "createdAt": p.created_at,
                }
                for p in recent
            ],
            "expiringMemberships": [
                {
                    "id": m.pk,
                    "username": m.username,
                    "accessExpiresAt": m.access_expires_at,
                    "isActive": m.is_active,
                }
                for m in expiring
            ],
        }
    )
