from django.db import transaction
from django.db.models import Q
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET, require_http_methods

from core.http import clean_form, json_view, parse_json_body
from memberships.services import set_membership_expiration

from . import services
from .context import require_admin
from .forms import AdminUserUpdateForm
from .models import User


def _latest_membership(user: User):
    # users() prefetches memberships; same order as get_for_user
    memberships = sorted(user.memberships.all(), key=lambda m: (m.access_granted_at, m.pk), reverse=True)
    return memberships[0] if memberships else None


def _admin_user_json(user: User) -> dict:
    membership = _latest_membership(user)
    return {
        "id": user.pk,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "isAdmin": user.has_admin_access,
        "createdAt": user.date_joined,
        "updatedAt": user.updated_at,
        "membership": membership.as_summary() if membership else None,
    }


@require_GET
@json_view
def check(request: HttpRequest):
    require_admin(request.caller)
    return JsonResponse({"isAdmin": True})


@require_GET
@json_view
def users(request: HttpRequest):
    require_admin(request.caller)
    qs = User.objects.prefetch_related("memberships").order_by("-date_joined")
    search = (request.GET.get("search") or "").strip()
    if search:
        qs = qs.filter(Q(email__icontains=search) | Q(name__icontains=search) | Q(username__icontains=search))
    return JsonResponse({"users": [_admin_user_json(u) for u in qs]})


@require_http_methods(["PATCH"])
@json_view
def user_detail(request: HttpRequest, user_id: int):
    require_admin(request.caller)
    body = parse_json_body(request)
    data = clean_form(AdminUserUpdateForm, body, user_id=user_id)

    with transaction.atomic():
        user = services.admin_update_user(
            user_id,
            name=data.get("name") or "",
            email=data.get("email") or "",
            role=data.get("role") or "",
            is_admin=data.get("isAdmin") if "isAdmin" in body else None,
        )
        if data.get("accessExpiresAt"):
            set_membership_expiration(user.pk, data["accessExpiresAt"])

    return JsonResponse({"user": _admin_user_json(user)})
