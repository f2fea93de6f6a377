from django.contrib import admin
from django.contrib.auth.admin import UserAdmin
from .models import User

@admin.register(User)
class CustomUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (
        ("プロフィール", {"fields": ("name",)}),
        ("12SKINS", {"fields": ("role", "is_admin")}),
    )
    add_fieldsets = UserAdmin.add_fieldsets + (
        ("プロフィール", {"fields": ("email", "name")}),
    )
    list_display = ("id", "name", "email", "username", "role", "is_admin", "is_staff")
    list_filter = ("role", "is_admin", "is_staff", "is_active")
    search_fields = ("name", "email", "username")
