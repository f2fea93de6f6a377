import uuid

from django.conf import settings
from django.db import models


class Payment(models.Model):
    """One purchase attempt of a membership plan."""

    class PlanType(models.TextChoices):
        BASIC = "basic", "ベーシック"
        STANDARD = "standard", "スタンダード"
        PREMIUM = "premium", "プレミアム"

    class Method(models.TextChoices):
        BANK_TRANSFER = "bank_transfer", "銀行振込"
        CREDIT_CARD = "credit_card", "クレジットカード"
        DIRECT_DEBIT = "direct_debit", "口座引き落とし"

    class Status(models.TextChoices):
        PENDING = "pending", "支払い待ち"
        COMPLETED = "completed", "完了"
        FAILED = "failed", "失敗"
        CANCELLED = "cancelled", "キャンセル"

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.CANCELLED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        verbose_name="ユーザー",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )

    plan_type = models.CharField("プラン", max_length=16, choices=PlanType.choices, db_index=True)
    amount = models.DecimalField("金額", max_digits=10, decimal_places=2)
    tax_amount = models.DecimalField("消費税", max_digits=10, decimal_places=2)
    total_amount = models.DecimalField("合計金額", max_digits=10, decimal_places=2)
    payment_method = models.CharField("支払い方法", max_length=16, choices=Method.choices)

    gateway_order_id = models.CharField("UnivaPay order id", max_length=64, blank=True, default="", db_index=True)
    gateway_transaction_id = models.CharField(
        "UnivaPay transaction id", max_length=64, blank=True, default="", db_index=True
    )
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)

    # Customer contact captured at purchase time (may precede the account).
    name = models.CharField("氏名", max_length=255)
    email = models.EmailField("メールアドレス")
    phone_number = models.CharField("電話番号", max_length=32)
    company_name = models.CharField("会社名", max_length=255, blank=True, default="")
    postal_code = models.CharField("郵便番号", max_length=16, blank=True, default="")
    address = models.CharField("住所", max_length=255, blank=True, default="")

    seller = models.CharField("販売者", max_length=120, blank=True, default="", db_index=True)

    created_at = models.DateTimeField("作成日時", auto_now_add=True)
    updated_at = models.DateTimeField("更新日時", auto_now=True)

    class Meta:
        verbose_name = "支払い"
        verbose_name_plural = "支払い"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="payment_status_created_idx"),
            models.Index(fields=["plan_type", "created_at"], name="payment_plan_created_idx"),
        ]

    def __str__(self) -> str:
        return f"Payment#{self.pk} {self.plan_type} ({self.status})"

    @property
    def is_completed(self) -> bool:
        return self.status == self.Status.COMPLETED

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class PaymentWebhookLog(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    payload = models.JSONField()

    class Meta:
        verbose_name = "Webhookログ"
        verbose_name_plural = "Webhookログ"
        ordering = ["-created_at"]
