from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("payments", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Membership",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("username", models.CharField(max_length=64, unique=True, verbose_name="ユーザーID")),
                ("password_hash", models.CharField(max_length=128, verbose_name="パスワードハッシュ")),
                ("access_granted_at", models.DateTimeField(verbose_name="付与日時")),
                ("access_expires_at", models.DateTimeField(db_index=True, verbose_name="有効期限")),
                ("is_active", models.BooleanField(default=True, verbose_name="有効")),
                ("credentials_sent_at", models.DateTimeField(blank=True, null=True, verbose_name="認証情報送信日時")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="作成日時")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新日時")),
                (
                    "payment",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="membership",
                        to="payments.payment",
                        verbose_name="支払い",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="memberships",
                        to=settings.AUTH_USER_MODEL,
                        verbose_name="ユーザー",
                    ),
                ),
            ],
            options={
                "verbose_name": "会員権限",
                "verbose_name_plural": "会員権限",
                "ordering": ["-access_granted_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(access_expires_at__gte=models.F("access_granted_at")),
                        name="membership_expires_after_granted",
                    )
                ],
            },
        ),
    ]
