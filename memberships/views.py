from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_GET

from accounts.context import require_member
from core.http import json_view

from . import services


@require_GET
@json_view
def expiration_reminder(request: HttpRequest):
    services.authorize_cron(request.headers.get("Authorization", ""))
    report = services.send_expiration_reminders()

    payload = {
        "success": True,
        "message": (
            f"Processed {report.total} memberships"
            if report.total
            else "No memberships expiring soon"
        ),
        "emailsSent": report.success_count,
        "emailsFailed": report.failure_count,
        "duration": report.duration_ms,
    }
    if report.errors:
        payload["errors"] = report.errors
    return JsonResponse(payload)


@require_GET
@json_view
def members_area(request: HttpRequest):
    caller = require_member(request.caller)
    membership = services.get_for_user(caller.user_id)
    return JsonResponse(
        {
            "user": {"id": caller.user_id, "email": caller.email, "name": caller.name},
            "membership": membership.as_summary(),
            "planType": membership.payment.plan_type,
        }
    )
