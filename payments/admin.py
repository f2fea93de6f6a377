from django.contrib import admin
from .models import Payment, PaymentWebhookLog


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "email",
        "plan_type",
        "payment_method",
        "total_amount",
        "status",
        "seller",
        "created_at",
    )
    list_filter = ("status", "plan_type", "payment_method")
    search_fields = ("name", "email", "phone_number", "gateway_order_id", "gateway_transaction_id")
    readonly_fields = ("id", "gateway_order_id", "gateway_transaction_id", "created_at", "updated_at")
    autocomplete_fields = ("user",)
    ordering = ("-created_at",)


@admin.register(PaymentWebhookLog)
class PaymentWebhookLogAdmin(admin.ModelAdmin):
    list_display = ("id", "created_at")
    readonly_fields = ("created_at", "payload")
