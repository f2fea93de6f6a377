from .context import CallerContext


class CallerContextMiddleware:
    """Attach ``request.caller`` after Django's AuthenticationMiddleware.

    For a logged-in user this runs the expiration sweep, so membership
    expiry is evaluated lazily on every authenticated request.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.caller = self._build_context(request)
        return self.get_response(request)

    @staticmethod
    def _build_context(request) -> CallerContext:
        from memberships.services import check_and_expire

        user = getattr(request, "user", None)
        if user is None or not user.is_authenticated:
            return CallerContext.anonymous()
        return CallerContext.for_user(user, has_active_membership=check_and_expire(user.pk))
