from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import authenticate, get_user_model
from django.contrib.auth.hashers import make_password
from django.db import connection
from django.test import RequestFactory, TestCase
from django.test.utils import CaptureQueriesContext
from django.urls import reverse
from django.utils import timezone

from core.exceptions import Forbidden, Unauthorized
from memberships.models import Membership
from payments.models import Payment

from .context import CallerContext, require_admin, require_caller, require_member
from .middleware import CallerContextMiddleware


def make_membership(user, *, expires_at):
    payment = Payment.objects.create(
        user=user,
        plan_type=Payment.PlanType.PREMIUM,
        amount=Decimal("120000.00"),
        tax_amount=Decimal("12000.00"),
        total_amount=Decimal("132000.00"),
        payment_method=Payment.Method.BANK_TRANSFER,
        status=Payment.Status.COMPLETED,
        name=user.name or "会員",
        email=user.email,
        phone_number="03-0000-0000",
    )
    return Membership.objects.create(
        user=user,
        payment=payment,
        username=f"user_{payment.pk.hex[:8]}",
        password_hash=make_password("x"),
        access_granted_at=expires_at - timedelta(days=180),
        access_expires_at=expires_at,
    )


class EmailBackendTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(
            username="user_0a1b2c3d", email="hanako@example.com", password="secret12", name="花子"
        )

    def test_login_by_email_is_case_insensitive(self):
        self.assertEqual(authenticate(email="  HANAKO@example.com ", password="secret12"), self.user)
        self.assertIsNone(authenticate(email="hanako@example.com", password="wrong"))

    def test_login_by_username(self):
        self.assertEqual(authenticate(username="USER_0a1b2c3d", password="secret12"), self.user)

    def test_inactive_user_cannot_login(self):
        self.user.is_active = False
        self.user.save(update_fields=["is_active"])
        self.assertIsNone(authenticate(email="hanako@example.com", password="secret12"))


class CallerContextTests(TestCase):
    def test_guards(self):
        anonymous = CallerContext.anonymous()
        user = CallerContext(user_id=1, email="a@example.com")
        admin = CallerContext(user_id=2, is_admin=True)
        member = CallerContext(user_id=3, has_active_membership=True)

        with self.assertRaises(Unauthorized):
            require_caller(anonymous)
        with self.assertRaises(Unauthorized):
            require_admin(anonymous)
        with self.assertRaises(Forbidden):
            require_admin(user)
        with self.assertRaises(Forbidden):
            require_member(user)
        with self.assertRaises(Unauthorized):
            require_member(anonymous)

        self.assertEqual(require_admin(admin), admin)
        self.assertEqual(require_member(member), member)

    def test_admin_flags(self):
        user_model = get_user_model()
        self.assertTrue(user_model(role="admin").has_admin_access)
        self.assertTrue(user_model(is_admin=True).has_admin_access)
        self.assertTrue(user_model(is_superuser=True).has_admin_access)
        self.assertFalse(user_model().has_admin_access)

    def test_middleware_runs_expiration_sweep(self):
        user = get_user_model().objects.create_user(username="u", email="u@example.com", password="secret12", name="U")
        membership = make_membership(user, expires_at=timezone.now() - timedelta(hours=1))
        request = RequestFactory().get("/")
        request.user = user

        CallerContextMiddleware(lambda r: None)(request)

        self.assertEqual(request.caller.user_id, user.pk)
        self.assertEqual(request.caller.name, "U")
        self.assertFalse(request.caller.has_active_membership)
        membership.refresh_from_db()
        self.assertFalse(membership.is_active)


class AuthEndpointTests(TestCase):
    def test_register_logs_in(self):
        response = self.client.post(
            reverse("accounts:register"),
            {"email": "New@Example.com", "name": "新規", "password": "secret12"},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["user"]["email"], "new@example.com")
        me = self.client.get(reverse("accounts:me")).json()
        self.assertEqual(me["user"]["email"], "new@example.com")
        self.assertFalse(me["hasActiveMembership"])

    def test_register_validation(self):
        get_user_model().objects.create_user(username="taken", email="taken@example.com", password="secret12")
        cases = [
            ({"email": "taken@example.com", "name": "x", "password": "secret12"}, "このメールアドレスは既に登録されています"),
            ({"email": "ok@example.com", "name": "x", "password": "123"}, "パスワードは6文字以上で入力してください"),
            ({"email": "ok@example.com", "password": "secret12"}, "名前を入力してください"),
        ]
        for body, message in cases:
            with self.subTest(body=body):
                response = self.client.post(reverse("accounts:register"), body, content_type="application/json")
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], message)

    def test_login_reports_membership(self):
        user = get_user_model().objects.create_user(username="u", email="u@example.com", password="secret12")
        make_membership(user, expires_at=timezone.now() + timedelta(days=30))

        response = self.client.post(
            reverse("accounts:login"),
            {"email": "u@example.com", "password": "secret12"},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["hasActiveMembership"])

    def test_login_failure(self):
        response = self.client.post(
            reverse("accounts:login"),
            {"email": "nobody@example.com", "password": "secret12"},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 401)

    def test_logout_and_anonymous_me(self):
        user = get_user_model().objects.create_user(username="u", email="u@example.com", password="secret12")
        self.client.force_login(user)

        self.assertEqual(self.client.post(reverse("accounts:logout")).status_code, 200)
        self.assertEqual(self.client.get(reverse("accounts:me")).json(), {"user": None})

    def test_csrf_cookie(self):
        response = self.client.get(reverse("accounts:csrf"))
        self.assertEqual(response.status_code, 200)
        self.assertIn("csrftoken", response.cookies)


class ProfileTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(
            username="u", email="u@example.com", password="secret12", name="旧名"
        )
        self.url = reverse("accounts:profile")

    def test_requires_login(self):
        self.assertEqual(self.client.get(self.url).status_code, 401)

    def test_profile_shows_membership_without_secret(self):
        membership = make_membership(self.user, expires_at=timezone.now() + timedelta(days=90))
        self.client.force_login(self.user)

        body = self.client.get(self.url).json()

        self.assertEqual(body["membership"]["username"], membership.username)
        self.assertNotIn("passwordHash", body["membership"])
        self.assertEqual(len(body["payments"]), 1)

    def test_update_name(self):
        self.client.force_login(self.user)
        response = self.client.patch(self.url, {"name": "新名"}, content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertEqual(self.user.name, "新名")

        response = self.client.patch(self.url, {"name": " "}, content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_password_change_needs_current_password(self):
        self.client.force_login(self.user)

        response = self.client.patch(self.url, {"newPassword": "newpass1"}, content_type="application/json")
        self.assertEqual(response.status_code, 400)

        response = self.client.patch(
            self.url, {"currentPassword": "wrong", "newPassword": "newpass1"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 401)

        response = self.client.patch(
            self.url, {"currentPassword": "secret12", "newPassword": "newpass1"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertTrue(self.user.check_password("newpass1"))
        # session survives the password change
        self.assertEqual(self.client.get(self.url).status_code, 200)


class AdminUserEndpointTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(
            username="admin", email="admin@example.com", password="secret12", role="admin"
        )
        self.user = user_model.objects.create_user(username="u", email="u@example.com", password="secret12", name="会員")

    def test_check(self):
        url = reverse("admin_check")
        self.assertEqual(self.client.get(url).status_code, 401)
        self.client.force_login(self.user)
        self.assertEqual(self.client.get(url).status_code, 403)
        self.client.force_login(self.admin)
        self.assertEqual(self.client.get(url).json(), {"isAdmin": True})

    def test_list_users_with_membership(self):
        make_membership(self.user, expires_at=timezone.now() + timedelta(days=10))
        self.client.force_login(self.admin)

        users = {row["email"]: row for row in self.client.get(reverse("admin_users")).json()["users"]}

        self.assertIsNone(users["admin@example.com"]["membership"])
        self.assertTrue(users["u@example.com"]["membership"]["isActive"])

    def test_user_listing_query_count_does_not_grow(self):
        make_membership(self.user, expires_at=timezone.now() + timedelta(days=10))
        self.client.force_login(self.admin)
        url = reverse("admin_users")

        with CaptureQueriesContext(connection) as few:
            self.client.get(url)

        user_model = get_user_model()
        for i in range(3):
            extra = user_model.objects.create_user(username=f"m{i}", email=f"m{i}@example.com", password="secret12")
            make_membership(extra, expires_at=timezone.now() + timedelta(days=20 + i))
        with CaptureQueriesContext(connection) as many:
            body = self.client.get(url).json()

        self.assertEqual(len(many.captured_queries), len(few.captured_queries))
        self.assertEqual(sum(1 for row in body["users"] if row["membership"]), 4)

    def test_user_listing_shows_latest_membership(self):
        now = timezone.now()
        make_membership(self.user, expires_at=now - timedelta(days=100))
        latest = make_membership(self.user, expires_at=now + timedelta(days=150))
        self.client.force_login(self.admin)

        users = {row["email"]: row for row in self.client.get(reverse("admin_users")).json()["users"]}

        self.assertEqual(users["u@example.com"]["membership"]["id"], latest.pk)

    def test_update_user_and_expiry(self):
        membership = make_membership(self.user, expires_at=timezone.now() + timedelta(days=10))
        self.client.force_login(self.admin)
        url = reverse("admin_user_detail", args=[self.user.pk])

        response = self.client.patch(
            url,
            {"name": "改名", "role": "admin", "isAdmin": False, "accessExpiresAt": "2099-01-31"},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertEqual(self.user.name, "改名")
        self.assertEqual(self.user.role, "admin")
        membership.refresh_from_db()
        self.assertEqual(timezone.localdate(membership.access_expires_at).isoformat(), "2099-01-31")

    def test_expiry_before_grant_is_rejected(self):
        make_membership(self.user, expires_at=timezone.now() + timedelta(days=10))
        self.client.force_login(self.admin)

        response = self.client.patch(
            reverse("admin_user_detail", args=[self.user.pk]),
            {"name": "変更されない", "accessExpiresAt": "2000-01-01"},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 400)
        self.user.refresh_from_db()
        self.assertEqual(self.user.name, "会員")

    def test_email_conflict_and_unknown_user(self):
        self.client.force_login(self.admin)
        response = self.client.patch(
            reverse("admin_user_detail", args=[self.user.pk]),
            {"email": "ADMIN@example.com"},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.patch(
            reverse("admin_user_detail", args=[999999]), {"name": "x"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, 404)
