from django.conf import settings
from django.contrib.auth.hashers import check_password
from django.db import models
from django.utils import timezone


class Membership(models.Model):
    """Member-site access granted by one completed payment."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        verbose_name="ユーザー",
        on_delete=models.CASCADE,
        related_name="memberships",
    )
    payment = models.OneToOneField(
        "payments.Payment",
        verbose_name="支払い",
        on_delete=models.PROTECT,
        related_name="membership",
    )

    # Credentials issued for the member site; the plaintext is only mailed once.
    username = models.CharField("ユーザーID", max_length=64, unique=True)
    password_hash = models.CharField("パスワードハッシュ", max_length=128)

    access_granted_at = models.DateTimeField("付与日時")
    access_expires_at = models.DateTimeField("有効期限", db_index=True)
    is_active = models.BooleanField("有効", default=True)
    credentials_sent_at = models.DateTimeField("認証情報送信日時", null=True, blank=True)

    created_at = models.DateTimeField("作成日時", auto_now_add=True)
    updated_at = models.DateTimeField("更新日時", auto_now=True)

    class Meta:
        verbose_name = "会員権限"
        verbose_name_plural = "会員権限"
        ordering = ["-access_granted_at"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(access_expires_at__gte=models.F("access_granted_at")),
                name="membership_expires_after_granted",
            ),
        ]

    def __str__(self) -> str:
        return f"Membership#{self.pk} {self.username}"

    def is_expired(self, now=None) -> bool:
        now = now or timezone.now()
        return self.access_expires_at < now

    def check_credentials(self, raw_password: str) -> bool:
        return check_password(raw_password, self.password_hash)

    def as_summary(self) -> dict:
        """Public view of the membership; never includes the password hash."""
        return {
            "id": self.pk,
            "username": self.username,
            "isActive": self.is_active,
            "accessGrantedAt": self.access_granted_at,
            "accessExpiresAt": self.access_expires_at,
            "credentialsSentAt": self.credentials_sent_at,
        }
