from __future__ import annotations

from dataclasses import dataclass

from core.exceptions import Forbidden, Unauthorized


@dataclass(frozen=True)
class CallerContext:
    """Identity of the caller of one request.

    Built once per request by CallerContextMiddleware and handed to every
    operation that needs to know who is asking.
    """

    user_id: int | None = None
    email: str = ""
    name: str = ""
    is_admin: bool = False
    has_active_membership: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def anonymous(cls) -> "CallerContext":
        return cls()

    @classmethod
    def for_user(cls, user, *, has_active_membership: bool = False) -> "CallerContext":
        return cls(
            user_id=user.pk,
            email=user.email or "",
            name=user.get_full_name() or "",
            is_admin=user.has_admin_access,
            has_active_membership=has_active_membership,
        )


def require_caller(ctx: CallerContext) -> CallerContext:
    if not ctx.is_authenticated:
        raise Unauthorized("ログインが必要です")
    return ctx


def require_admin(ctx: CallerContext) -> CallerContext:
    require_caller(ctx)
    if not ctx.is_admin:
        raise Forbidden("管理者権限が必要です")
    return ctx


def require_member(ctx: CallerContext) -> CallerContext:
    require_caller(ctx)
    if not ctx.has_active_membership:
        raise Forbidden("有効な会員権限がありません")
    return ctx
