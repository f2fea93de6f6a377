from django.contrib import admin, messages

from .models import Membership
from .services import set_membership_active


@admin.register(Membership)
class MembershipAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "username",
        "payment",
        "access_granted_at",
        "access_expires_at",
        "is_active",
        "credentials_sent_at",
    )
    list_filter = ("is_active",)
    search_fields = ("username", "user__email", "user__name", "payment__email")
    readonly_fields = ("username", "password_hash", "payment", "credentials_sent_at", "created_at", "updated_at")
    ordering = ("-access_granted_at",)
    actions = ("activate", "deactivate")

    @admin.action(description="有効にする")
    def activate(self, request, queryset):
        for membership in queryset:
            set_membership_active(membership.pk, True)
        self.message_user(request, f"{queryset.count()}件を有効にしました", messages.SUCCESS)

    @admin.action(description="無効にする")
    def deactivate(self, request, queryset):
        for membership in queryset:
            set_membership_active(membership.pk, False)
        self.message_user(request, f"{queryset.count()}件を無効にしました", messages.SUCCESS)
