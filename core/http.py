import functools
import json
import logging
from typing import Any

from django.core.exceptions import ObjectDoesNotExist, PermissionDenied, ValidationError
from django.http import HttpRequest, JsonResponse

from .exceptions import ServiceError


logger = logging.getLogger(__name__)


def json_error(message: str, status: int = 400, **extra) -> JsonResponse:
    return JsonResponse({"error": message, **extra}, status=status)


def validation_message(exc: ValidationError) -> str:
    messages = getattr(exc, "messages", None) or []
    if messages:
        return str(messages[0])
    return str(exc) or "入力内容が正しくありません"


def parse_json_body(request: HttpRequest) -> dict[str, Any]:
    raw = request.body or b""
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("リクエストの形式が正しくありません")
    if not isinstance(data, dict):
        raise ValidationError("リクエストの形式が正しくありません")
    return data


def clean_form(form_class, data: dict[str, Any], **kwargs) -> dict[str, Any]:
    """Run a Django form over JSON data and return cleaned_data.

    The first field error is raised as ValidationError.
    """
    form = form_class(data=data, **kwargs)
    if form.is_valid():
        return form.cleaned_data
    for errors in form.errors.values():
        if errors:
            raise ValidationError(str(errors[0]))
    raise ValidationError("入力内容が正しくありません")


def json_view(view):
    """Translate service exceptions raised by a JSON view into error responses.

    Anything not in the taxonomy is logged with the request path and answered
    with a bare 500 so internals never reach the client.
    """

    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except ValidationError as exc:
            return json_error(validation_message(exc), status=400)
        except ServiceError as exc:
            if exc.status_code >= 500:
                logger.warning("%s %s failed: %s", request.method, request.path, exc.message)
            return json_error(exc.message, status=exc.status_code)
        except PermissionDenied as exc:
            return json_error(str(exc) or "Forbidden", status=403)
        except ObjectDoesNotExist:
            return json_error("Not found", status=404)
        except Exception:
            logger.exception("Unhandled error in %s %s", request.method, request.path)
            return json_error("internal error", status=500)

    return wrapper
