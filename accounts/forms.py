from django import forms
from django.utils.crypto import get_random_string

from .backends import normalize_email
from .models import User


PASSWORD_MIN_LENGTH = 6


def email_conflicts(email: str, *, exclude_user_id=None) -> bool:
    if not email:
        return False
    qs = User.objects.filter(email__iexact=email)
    if exclude_user_id:
        qs = qs.exclude(pk=exclude_user_id)
    return qs.exists()


def generate_unique_username(email: str = "") -> str:
    local_part = normalize_email(email).split("@", 1)[0]
    base = local_part[:120] or f"user_{get_random_string(8)}"
    username = base
    index = 1
    while User.objects.filter(username=username).exists():
        index += 1
        suffix = f"_{index}"
        username = f"{base[:150 - len(suffix)]}{suffix}"
    return username


class RegisterForm(forms.Form):
    email = forms.EmailField(
        max_length=254,
        error_messages={
            "required": "メールアドレスを入力してください",
            "invalid": "有効なメールアドレスを入力してください",
        },
    )
    name = forms.CharField(max_length=255, error_messages={"required": "名前を入力してください"})
    password = forms.CharField(
        min_length=PASSWORD_MIN_LENGTH,
        error_messages={
            "required": "パスワードを入力してください",
            "min_length": "パスワードは6文字以上で入力してください",
        },
    )

    def clean_email(self):
        email = normalize_email(self.cleaned_data.get("email"))
        if email_conflicts(email):
            raise forms.ValidationError("このメールアドレスは既に登録されています")
        return email


class LoginForm(forms.Form):
    # e-mail address or the member-site user ID
    email = forms.CharField(max_length=254, error_messages={"required": "メールアドレスを入力してください"})
    password = forms.CharField(error_messages={"required": "パスワードを入力してください"})


class ProfileUpdateForm(forms.Form):
    name = forms.CharField(required=False, max_length=255)
    currentPassword = forms.CharField(required=False)
    newPassword = forms.CharField(
        required=False,
        min_length=PASSWORD_MIN_LENGTH,
        error_messages={"min_length": "パスワードは6文字以上で入力してください"},
    )

    def clean(self):
        cleaned = super().clean()
        if "name" in self.data and not (cleaned.get("name") or "").strip():
            raise forms.ValidationError("名前を入力してください")
        if cleaned.get("newPassword") and not cleaned.get("currentPassword"):
            raise forms.ValidationError("現在のパスワードを入力してください")
        return cleaned


class AdminUserUpdateForm(forms.Form):
    name = forms.CharField(required=False, max_length=255)
    email = forms.EmailField(required=False, error_messages={"invalid": "有効なメールアドレスを入力してください"})
    role = forms.ChoiceField(required=False, choices=User.Role.choices)
    isAdmin = forms.NullBooleanField(required=False)
    accessExpiresAt = forms.DateTimeField(
        required=False,
        input_formats=["%Y-%m-%dT%H:%M", "%Y-%m-%d"],
        error_messages={"invalid": "有効期限の形式が正しくありません"},
    )

    def __init__(self, *args, user_id=None, **kwargs):
        self.user_id = user_id
        super().__init__(*args, **kwargs)

    def clean_email(self):
        email = normalize_email(self.cleaned_data.get("email"))
        if email and email_conflicts(email, exclude_user_id=self.user_id):
            raise forms.ValidationError("このメールアドレスは既に使用されています")
        return email
