from django.contrib.auth import login, logout, update_session_auth_hash
from django.http import HttpRequest, JsonResponse
from django.middleware.csrf import get_token
from django.views.decorators.csrf import ensure_csrf_cookie
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from core.exceptions import Unauthorized
from core.http import clean_form, json_view, parse_json_body
from memberships.services import check_and_expire, get_for_user

from . import services
from .context import require_caller
from .forms import LoginForm, ProfileUpdateForm, RegisterForm


def _user_json(user) -> dict:
    return {"id": user.pk, "email": user.email, "name": user.name}


@require_GET
@ensure_csrf_cookie
def csrf(request: HttpRequest):
    return JsonResponse({"csrfToken": get_token(request)})


@require_POST
@json_view
def register(request: HttpRequest):
    data = clean_form(RegisterForm, parse_json_body(request))
    user = services.register_user(email=data["email"], name=data["name"], password=data["password"])
    login(request, user, backend="accounts.backends.EmailBackend")
    return JsonResponse({"message": "登録が完了しました", "user": _user_json(user)}, status=201)


@require_POST
@json_view
def login_view(request: HttpRequest):
    data = clean_form(LoginForm, parse_json_body(request))
    user = services.authenticate_user(request, email=data["email"], password=data["password"])
    if user is None:
        raise Unauthorized("メールアドレスまたはパスワードが正しくありません")

    login(request, user)
    has_active_membership = check_and_expire(user.pk)
    return JsonResponse(
        {
            "message": "ログインに成功しました",
            "user": _user_json(user),
            "hasActiveMembership": has_active_membership,
        }
    )


@require_POST
@json_view
def logout_view(request: HttpRequest):
    logout(request)
    return JsonResponse({"message": "ログアウトしました"})


@require_GET
@json_view
def me(request: HttpRequest):
    caller = request.caller
    if not caller.is_authenticated:
        return JsonResponse({"user": None})
    return JsonResponse(
        {
            "user": {"id": caller.user_id, "email": caller.email, "name": caller.name},
            "isAdmin": caller.is_admin,
            "hasActiveMembership": caller.has_active_membership,
        }
    )


@require_http_methods(["GET", "PATCH"])
@json_view
def profile(request: HttpRequest):
    caller = require_caller(request.caller)

    if request.method == "PATCH":
        body = parse_json_body(request)
        data = clean_form(ProfileUpdateForm, body)
        user = services.update_profile(
            caller.user_id,
            name=data["name"] if "name" in body else None,
            current_password=data.get("currentPassword") or "",
            new_password=data.get("newPassword") or "",
        )
        if data.get("newPassword"):
            update_session_auth_hash(request, user)
        return JsonResponse({"message": "プロフィールを更新しました", "user": _user_json(user)})

    user = services.get_user(caller.user_id)
    membership = get_for_user(user.pk)
    payments = [
        {
            "id": str(p.pk),
            "planType": p.plan_type,
            "paymentMethod": p.payment_method,
            "totalAmount": p.total_amount,
            "status": p.status,
            "createdAt": p.created_at,
        }
        for p in user.payments.order_by("-created_at")
    ]
    return JsonResponse(
        {
            "user": {**_user_json(user), "createdAt": user.date_joined},
            "membership": membership.as_summary() if membership else None,
            "payments": payments,
        }
    )
