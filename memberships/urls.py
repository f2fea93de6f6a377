from django.urls import path

from . import views

app_name = "memberships"
urlpatterns = [
    path("members/", views.members_area, name="members_area"),
    path(
        "cron/membership-expiration-reminder/",
        views.expiration_reminder,
        name="expiration_reminder",
    ),
]
