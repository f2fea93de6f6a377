from django.contrib import admin
from django.urls import path, include

from accounts import admin_views as account_admin_views
from memberships import admin_views as membership_admin_views

admin.site.site_header = "12SKINS 管理画面"
admin.site.site_title = "12SKINS"
admin.site.index_title = "管理"

urlpatterns = [
    # JSON admin API used by the dashboard frontend
    path("api/admin/check/", account_admin_views.check, name="admin_check"),
    path("api/admin/users/", account_admin_views.users, name="admin_users"),
    path("api/admin/users/<int:user_id>/", account_admin_views.user_detail, name="admin_user_detail"),
    path("api/admin/dashboard/", membership_admin_views.dashboard, name="admin_dashboard"),
    path("api/admin/subscriptions/", membership_admin_views.subscriptions, name="admin_subscriptions"),
    path(
        "api/admin/subscriptions/<str:payment_id>/",
        membership_admin_views.subscription_detail,
        name="admin_subscription_detail",
    ),
    path(
        "api/admin/subscriptions/<str:payment_id>/create-account/",
        membership_admin_views.create_account,
        name="admin_subscription_create_account",
    ),

    path("admin/", admin.site.urls),

    path("api/auth/", include("accounts.urls")),
    path("api/payment/", include("payments.urls")),
    path("api/", include("memberships.urls")),
]
