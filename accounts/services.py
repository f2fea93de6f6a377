from __future__ import annotations

import logging

from django.contrib.auth import authenticate
from django.db import transaction
from django.utils.crypto import get_random_string

from core.exceptions import NotFoundError, Unauthorized

from .backends import normalize_email
from .forms import generate_unique_username
from .models import User


logger = logging.getLogger(__name__)

GENERATED_PASSWORD_LENGTH = 16
HEX_CHARS = "0123456789abcdef"


def generate_password() -> str:
    return get_random_string(GENERATED_PASSWORD_LENGTH, allowed_chars=HEX_CHARS)


def get_user(user_id) -> User:
    user = User.objects.filter(pk=user_id).first()
    if not user:
        raise NotFoundError("ユーザーが見つかりません")
    return user


def get_user_by_email(email: str) -> User | None:
    email = normalize_email(email)
    if not email:
        return None
    return User.objects.filter(email__iexact=email).first()


@transaction.atomic
def register_user(*, email: str, name: str, password: str, username: str = "") -> User:
    email = normalize_email(email)
    user = User.objects.create_user(
        username=username or generate_unique_username(email),
        email=email,
        password=password,
        name=(name or "").strip(),
    )
    logger.info("Registered user #%s", user.pk)
    return user


def create_purchaser_account(*, email: str, name: str, username: str, password: str) -> User:
    """Create the account of a purchaser that has none yet.

    The account signs in with the member-site credentials mailed after payment.
    """
    return register_user(email=email, name=name, password=password, username=username)


def authenticate_user(request, *, email: str, password: str) -> User | None:
    return authenticate(request, email=normalize_email(email), password=password)


def update_profile(user_id, *, name: str | None = None, current_password: str = "", new_password: str = "") -> User:
    user = get_user(user_id)
    update_fields = []

    if name is not None:
        user.name = name.strip()
        update_fields.append("name")

    if new_password:
        if not user.check_password(current_password or ""):
            raise Unauthorized("現在のパスワードが正しくありません")
        user.set_password(new_password)
        update_fields.append("password")

    if update_fields:
        update_fields.append("updated_at")
        user.save(update_fields=update_fields)
    return user


def admin_update_user(user_id, *, name: str = "", email: str = "", role: str = "", is_admin: bool | None = None) -> User:
    user = get_user(user_id)
    update_fields = []
    if name:
        user.name = name.strip()
        update_fields.append("name")
    if email:
        user.email = normalize_email(email)
        update_fields.append("email")
    if role:
        user.role = role
        update_fields.append("role")
    if is_admin is not None:
        user.is_admin = bool(is_admin)
        update_fields.append("is_admin")

    if update_fields:
        update_fields.append("updated_at")
        user.save(update_fields=update_fields)
        logger.info("Admin updated user #%s fields=%s", user.pk, ",".join(update_fields))
    return user
