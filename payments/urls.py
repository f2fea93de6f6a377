from django.urls import path
from . import views

app_name = "payments"
urlpatterns = [
    path("create/", views.create_payment, name="create"),
    path("charge/", views.charge, name="charge"),
    path("callback/", views.callback, name="callback"),
    path("verify/", views.verify, name="verify"),
    path("plan/<str:plan>/", views.payments_by_plan, name="by_plan"),
]
