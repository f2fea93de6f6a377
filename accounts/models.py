from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    class Role(models.TextChoices):
        USER = "user", "一般ユーザー"
        ADMIN = "admin", "管理者"

    email = models.EmailField("メールアドレス", unique=True)
    name = models.CharField("氏名", max_length=255, blank=True)
    role = models.CharField("権限", max_length=16, choices=Role.choices, default=Role.USER)
    is_admin = models.BooleanField("管理者フラグ", default=False)
    updated_at = models.DateTimeField("更新日時", auto_now=True)

    @property
    def has_admin_access(self) -> bool:
        return bool(self.is_admin or self.role == self.Role.ADMIN or self.is_superuser)

    def get_full_name(self):
        name = (self.name or "").strip()
        if name:
            return name
        return super().get_full_name()

    def get_short_name(self):
        return self.get_full_name() or self.email

    def __str__(self):
        return self.get_full_name() or self.email or f"ユーザー #{self.pk}"
