import uuid

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentWebhookLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("payload", models.JSONField()),
            ],
            options={
                "verbose_name": "Webhookログ",
                "verbose_name_plural": "Webhookログ",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "plan_type",
                    models.CharField(
                        choices=[("basic", "ベーシック"), ("standard", "スタンダード"), ("premium", "プレミアム")],
                        db_index=True,
                        max_length=16,
                        verbose_name="プラン",
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=10, verbose_name="金額")),
                ("tax_amount", models.DecimalField(decimal_places=2, max_digits=10, verbose_name="消費税")),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=10, verbose_name="合計金額")),
                (
                    "payment_method",
                    models.CharField(
                        choices=[
                            ("bank_transfer", "銀行振込"),
                            ("credit_card", "クレジットカード"),
                            ("direct_debit", "口座引き落とし"),
                        ],
                        max_length=16,
                        verbose_name="支払い方法",
                    ),
                ),
                ("gateway_order_id", models.CharField(blank=True, db_index=True, default="", max_length=64, verbose_name="UnivaPay order id")),
                ("gateway_transaction_id", models.CharField(blank=True, db_index=True, default="", max_length=64, verbose_name="UnivaPay transaction id")),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "支払い待ち"), ("completed", "完了"), ("failed", "失敗"), ("cancelled", "キャンセル")],
                        db_index=True,
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("name", models.CharField(max_length=255, verbose_name="氏名")),
                ("email", models.EmailField(max_length=254, verbose_name="メールアドレス")),
                ("phone_number", models.CharField(max_length=32, verbose_name="電話番号")),
                ("company_name", models.CharField(blank=True, default="", max_length=255, verbose_name="会社名")),
                ("postal_code", models.CharField(blank=True, default="", max_length=16, verbose_name="郵便番号")),
                ("address", models.CharField(blank=True, default="", max_length=255, verbose_name="住所")),
                ("seller", models.CharField(blank=True, db_index=True, default="", max_length=120, verbose_name="販売者")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="作成日時")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新日時")),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="payments",
                        to=settings.AUTH_USER_MODEL,
                        verbose_name="ユーザー",
                    ),
                ),
            ],
            options={
                "verbose_name": "支払い",
                "verbose_name_plural": "支払い",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="payment_status_created_idx"),
                    models.Index(fields=["plan_type", "created_at"], name="payment_plan_created_idx"),
                ],
            },
        ),
    ]
