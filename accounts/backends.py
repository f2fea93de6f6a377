from django.contrib.auth import get_user_model
from django.contrib.auth.backends import ModelBackend


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class EmailBackend(ModelBackend):
    """Log in with the e-mail address (case-insensitive) or the username.

    The member-site ID and password issued with a membership are accepted as
    well, so a returning purchaser can use the pair from the credentials email
    next to their own password.
    """

    def authenticate(self, request, username=None, password=None, email=None, **kwargs):
        if password is None:
            return None

        user_model = get_user_model()
        login_value = (email or username or kwargs.get(user_model.USERNAME_FIELD) or "").strip()
        if not login_value:
            return None

        email_value = normalize_email(login_value)
        if "@" in email_value:
            by_email = list(user_model._default_manager.filter(email__iexact=email_value)[:2])
            if len(by_email) != 1:
                return None
            user = by_email[0]
            if user.check_password(password) or self._membership_password_matches(user, password):
                return user if self.user_can_authenticate(user) else None
            return None

        by_username = user_model._default_manager.filter(username__iexact=login_value).first()
        if by_username and by_username.check_password(password) and self.user_can_authenticate(by_username):
            return by_username
        return self._authenticate_membership(login_value, password)

    def _membership_password_matches(self, user, password) -> bool:
        from memberships.models import Membership

        return any(m.check_credentials(password) for m in Membership.objects.filter(user=user))

    def _authenticate_membership(self, login_value, password):
        from memberships.models import Membership

        membership = Membership.objects.select_related("user").filter(username__iexact=login_value).first()
        if membership and membership.check_credentials(password) and self.user_can_authenticate(membership.user):
            return membership.user
        return None
