from datetime import datetime, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import authenticate, get_user_model
from django.contrib.auth.hashers import make_password
from django.core import mail
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from core.exceptions import (
    AlreadyProvisionedError,
    ExternalServiceError,
    NotFoundError,
    PaymentNotCompletedError,
    Unauthorized,
)
from payments.models import Payment

from .models import Membership
from .services import (
    _add_months,
    admin_create_account,
    authorize_cron,
    check_and_expire,
    get_for_payment,
    get_for_user,
    get_memberships_expiring_soon,
    provision,
    send_expiration_reminders,
    set_membership_active,
    set_membership_expiration,
)


def local_dt(*args):
    return timezone.make_aware(datetime(*args))


def make_payment(email="buyer@example.com", status=Payment.Status.COMPLETED, **kwargs):
    defaults = {
        "plan_type": Payment.PlanType.BASIC,
        "amount": Decimal("50000.00"),
        "tax_amount": Decimal("5000.00"),
        "total_amount": Decimal("55000.00"),
        "payment_method": Payment.Method.CREDIT_CARD,
        "name": "山田 花子",
        "email": email,
        "phone_number": "090-0000-0000",
        "status": status,
    }
    defaults.update(kwargs)
    return Payment.objects.create(**defaults)


def make_membership(user, *, expires_at, granted_at=None, is_active=True):
    payment = make_payment(email=user.email, user=user)
    return Membership.objects.create(
        user=user,
        payment=payment,
        username=f"user_{payment.pk.hex[:8]}",
        password_hash=make_password("irrelevant"),
        access_granted_at=granted_at or expires_at - timedelta(days=180),
        access_expires_at=expires_at,
        is_active=is_active,
    )


class AddMonthsTests(TestCase):
    def test_day_is_clamped_to_month_end(self):
        self.assertEqual(_add_months(local_dt(2025, 8, 31, 9, 0), 6), local_dt(2026, 2, 28, 9, 0))
        self.assertEqual(_add_months(local_dt(2025, 1, 31, 9, 0), 1), local_dt(2025, 2, 28, 9, 0))

    def test_year_rollover(self):
        self.assertEqual(_add_months(local_dt(2025, 11, 15, 12, 30), 6), local_dt(2026, 5, 15, 12, 30))


class ProvisionTests(TestCase):
    def test_basic_plan_gets_six_months_of_access(self):
        payment = make_payment()
        granted = local_dt(2025, 1, 31, 10, 0)

        membership = provision(payment.pk, now=granted)

        membership.refresh_from_db()
        self.assertEqual(membership.access_granted_at, granted)
        self.assertEqual(membership.access_expires_at, local_dt(2025, 7, 31, 10, 0))
        self.assertTrue(membership.is_active)
        self.assertRegex(membership.username, r"^user_[0-9a-f]{8}$")
        self.assertEqual(get_for_payment(payment.pk), membership)

    def test_second_provision_is_rejected_and_count_unchanged(self):
        payment = make_payment()
        provision(payment.pk)

        with self.assertRaises(AlreadyProvisionedError):
            provision(payment.pk)
        self.assertEqual(Membership.objects.filter(payment=payment).count(), 1)

    def test_insert_race_maps_to_already_provisioned(self):
        payment = make_payment()
        provision(payment.pk)

        # Simulate losing the pre-check: the unique constraint still holds.
        with mock.patch("memberships.services.Membership.objects.filter") as filter_mock:
            filter_mock.return_value.exists.side_effect = [False, False, True]
            with self.assertRaises(AlreadyProvisionedError):
                provision(payment.pk)
        self.assertEqual(Membership.objects.count(), 1)

    def test_pending_payment_is_not_provisioned(self):
        payment = make_payment(status=Payment.Status.PENDING)
        with self.assertRaises(PaymentNotCompletedError):
            provision(payment.pk)
        self.assertFalse(Membership.objects.exists())

    def test_unknown_payment(self):
        with self.assertRaises(NotFoundError):
            provision("00000000-0000-0000-0000-000000000000")

    def test_new_purchaser_account_signs_in_with_issued_credentials(self):
        payment = make_payment(email="new@example.com")

        membership = provision(payment.pk)

        user = membership.user
        self.assertEqual(user.email, "new@example.com")
        self.assertEqual(user.username, membership.username)
        self.assertRegex(membership.issued_password, r"^[0-9a-f]{16}$")
        self.assertTrue(membership.check_credentials(membership.issued_password))
        self.assertNotEqual(membership.password_hash, membership.issued_password)
        self.assertEqual(authenticate(username=membership.username, password=membership.issued_password), user)
        payment.refresh_from_db()
        self.assertEqual(payment.user, user)

    def test_existing_account_is_reused_by_email(self):
        user = get_user_model().objects.create_user(username="hanako", email="hanako@example.com", password="secret12")
        payment = make_payment(email="Hanako@Example.com")

        membership = provision(payment.pk)

        self.assertEqual(membership.user, user)
        self.assertEqual(get_user_model().objects.count(), 1)
        user.refresh_from_db()
        self.assertTrue(user.check_password("secret12"))
        # the issued pair opens the same account
        self.assertEqual(authenticate(email="hanako@example.com", password=membership.issued_password), user)
        self.assertEqual(authenticate(username=membership.username, password=membership.issued_password), user)

    def test_issued_credentials_of_inactive_account_are_refused(self):
        user = get_user_model().objects.create_user(username="hanako", email="hanako@example.com", password="secret12")
        membership = provision(make_payment(email="hanako@example.com").pk)
        user.is_active = False
        user.save(update_fields=["is_active"])

        self.assertIsNone(authenticate(username=membership.username, password=membership.issued_password))
        self.assertIsNone(authenticate(email="hanako@example.com", password=membership.issued_password))

    def test_credentials_email_after_commit(self):
        payment = make_payment()

        with self.captureOnCommitCallbacks(execute=True):
            membership = provision(payment.pk)

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["buyer@example.com"])
        self.assertIn(membership.username, mail.outbox[0].body)
        self.assertIn(membership.issued_password, mail.outbox[0].body)
        membership.refresh_from_db()
        self.assertIsNotNone(membership.credentials_sent_at)

    def test_email_failure_keeps_membership(self):
        payment = make_payment()

        with mock.patch(
            "memberships.services.send_credentials_email",
            side_effect=ExternalServiceError("smtp down"),
        ):
            with self.assertLogs("memberships.services", level="WARNING"):
                with self.captureOnCommitCallbacks(execute=True):
                    membership = provision(payment.pk)

        membership.refresh_from_db()
        self.assertTrue(membership.is_active)
        self.assertIsNone(membership.credentials_sent_at)

    def test_get_for_user_returns_latest_grant(self):
        user = get_user_model().objects.create_user(username="u1", email="u1@example.com", password="secret12")
        now = timezone.now()
        make_membership(user, granted_at=now - timedelta(days=300), expires_at=now - timedelta(days=120))
        latest = make_membership(user, granted_at=now - timedelta(days=10), expires_at=now + timedelta(days=170))

        self.assertEqual(get_for_user(user.pk), latest)
        self.assertIsNone(get_for_user(None))


class MembershipConstraintTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="c1", email="c1@example.com", password="secret12")
        self.granted = local_dt(2025, 4, 1, 9, 0)

    def test_expiry_before_grant_cannot_be_inserted(self):
        payment = make_payment(email=self.user.email, user=self.user)

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Membership.objects.create(
                    user=self.user,
                    payment=payment,
                    username="user_0badc0de",
                    password_hash=make_password("x"),
                    access_granted_at=self.granted,
                    access_expires_at=self.granted - timedelta(seconds=1),
                )
        self.assertFalse(Membership.objects.exists())

    def test_expiry_before_grant_cannot_be_written_by_update(self):
        membership = make_membership(self.user, granted_at=self.granted, expires_at=self.granted + timedelta(days=180))

        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Membership.objects.filter(pk=membership.pk).update(access_expires_at=self.granted - timedelta(days=1))

        membership.refresh_from_db()
        self.assertEqual(membership.access_expires_at, self.granted + timedelta(days=180))

    def test_expiry_equal_to_grant_is_allowed(self):
        membership = make_membership(self.user, granted_at=self.granted, expires_at=self.granted)
        self.assertTrue(membership.is_expired(now=self.granted + timedelta(seconds=1)))
        self.assertFalse(membership.is_expired(now=self.granted))


class ExpirationSweepTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="u1", email="u1@example.com", password="secret12")

    def test_without_membership(self):
        self.assertFalse(check_and_expire(self.user.pk))

    def test_expired_yesterday_is_deactivated(self):
        now = timezone.now()
        membership = make_membership(self.user, expires_at=now - timedelta(days=1))

        self.assertFalse(check_and_expire(self.user.pk, now=now))

        membership.refresh_from_db()
        self.assertFalse(membership.is_active)

    def test_second_sweep_does_not_write(self):
        now = timezone.now()
        make_membership(self.user, expires_at=now - timedelta(days=1))
        check_and_expire(self.user.pk, now=now)

        # one SELECT, no UPDATE
        with self.assertNumQueries(1):
            self.assertFalse(check_and_expire(self.user.pk, now=now))

    def test_valid_membership_reports_its_flag(self):
        now = timezone.now()
        membership = make_membership(self.user, expires_at=now + timedelta(days=10))
        self.assertTrue(check_and_expire(self.user.pk, now=now))

        set_membership_active(membership.pk, False)
        self.assertFalse(check_and_expire(self.user.pk, now=now))

    def test_admin_reactivation_of_expired_membership_does_not_stick(self):
        now = timezone.now()
        membership = make_membership(self.user, expires_at=now - timedelta(days=3), is_active=False)

        set_membership_active(membership.pk, True)
        membership.refresh_from_db()
        self.assertTrue(membership.is_active)

        self.assertFalse(check_and_expire(self.user.pk, now=now))
        membership.refresh_from_db()
        self.assertFalse(membership.is_active)


class ReminderTests(TestCase):
    def setUp(self):
        self.now = local_dt(2025, 3, 1, 12, 0)
        user_model = get_user_model()
        self.users = [
            user_model.objects.create_user(username=f"u{i}", email=f"u{i}@example.com", password="secret12", name=f"会員{i}")
            for i in range(5)
        ]

    def test_only_exact_day_and_active(self):
        target = local_dt(2025, 3, 31, 9, 0)
        due = make_membership(self.users[0], expires_at=target)
        make_membership(self.users[1], expires_at=target - timedelta(days=1))
        make_membership(self.users[2], expires_at=target + timedelta(days=1))
        make_membership(self.users[3], expires_at=target, is_active=False)
        late_same_day = make_membership(self.users[4], expires_at=local_dt(2025, 3, 31, 23, 59))

        pairs = get_memberships_expiring_soon(now=self.now)

        self.assertEqual([m for m, _ in pairs], [due, late_same_day])
        self.assertEqual(pairs[0][1], self.users[0])

    @override_settings(MEMBERSHIP_REMINDER_DAYS=7)
    def test_reminder_offset_is_configurable(self):
        due = make_membership(self.users[0], expires_at=local_dt(2025, 3, 8, 18, 0))
        self.assertEqual([m for m, _ in get_memberships_expiring_soon(now=self.now)], [due])

    def test_failed_send_is_isolated(self):
        target = local_dt(2025, 3, 31, 9, 0)
        for i, user in enumerate(self.users[:3]):
            make_membership(user, expires_at=target + timedelta(minutes=i))

        with mock.patch(
            "memberships.services.send_expiration_reminder_email",
            side_effect=[None, ExternalServiceError("mailbox unavailable"), None],
        ) as send_mock:
            report = send_expiration_reminders(now=self.now)

        self.assertEqual(send_mock.call_count, 3)
        self.assertEqual(report.total, 3)
        self.assertEqual(report.success_count, 2)
        self.assertEqual(report.failure_count, 1)
        self.assertEqual(report.errors, [{"email": "u1@example.com", "error": "mailbox unavailable"}])
        self.assertGreaterEqual(report.duration_ms, 0)

    def test_reminder_email_is_sent(self):
        make_membership(self.users[0], expires_at=local_dt(2025, 3, 31, 9, 0))

        report = send_expiration_reminders(now=self.now)

        self.assertEqual(report.success_count, 1)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["u0@example.com"])
        self.assertIn("2025年03月31日", mail.outbox[0].body)

    @override_settings(CRON_SECRET="s3cret")
    def test_cron_authorization(self):
        authorize_cron("Bearer s3cret")
        with self.assertRaises(Unauthorized):
            authorize_cron("Bearer wrong")
        with self.assertRaises(Unauthorized):
            authorize_cron("")

    @override_settings(CRON_SECRET="")
    def test_cron_without_secret_runs_with_warning(self):
        with self.assertLogs("memberships.services", level="WARNING"):
            authorize_cron("")

    @override_settings(CRON_SECRET="s3cret")
    def test_cron_endpoint(self):
        url = reverse("memberships:expiration_reminder")
        self.assertEqual(self.client.get(url).status_code, 401)

        with mock.patch(
            "memberships.services.send_expiration_reminder_email",
            side_effect=ExternalServiceError("boom"),
        ):
            make_membership(self.users[0], expires_at=timezone.now() + timedelta(days=30))
            response = self.client.get(url, HTTP_AUTHORIZATION="Bearer s3cret")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["emailsSent"], 0)
        self.assertEqual(body["emailsFailed"], 1)
        self.assertEqual(body["errors"], [{"email": "u0@example.com", "error": "boom"}])
        self.assertIn("duration", body)

    def test_management_command(self):
        make_membership(self.users[0], expires_at=timezone.now() + timedelta(days=30))
        out = StringIO()

        call_command("send_expiration_reminders", stdout=out)

        self.assertIn("sent=1", out.getvalue())
        self.assertEqual(len(mail.outbox), 1)


class AdminOverrideTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="u1", email="u1@example.com", password="secret12")

    def test_expiration_cannot_precede_grant(self):
        now = timezone.now()
        membership = make_membership(self.user, granted_at=now, expires_at=now + timedelta(days=180))

        with self.assertRaises(ValidationError):
            set_membership_expiration(self.user.pk, now - timedelta(days=1))

        updated = set_membership_expiration(self.user.pk, now + timedelta(days=365))
        membership.refresh_from_db()
        self.assertEqual(membership.access_expires_at, updated.access_expires_at)

    def test_expiration_without_membership(self):
        with self.assertRaises(NotFoundError):
            set_membership_expiration(self.user.pk, timezone.now())

    def test_unknown_membership(self):
        with self.assertRaises(NotFoundError):
            set_membership_active(999999, True)

    def test_admin_create_account_completes_pending_payment(self):
        payment = make_payment(status=Payment.Status.PENDING, email="late@example.com")

        membership = admin_create_account(payment.pk)

        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertEqual(membership.payment, payment)
        self.assertTrue(membership.issued_password)

        with self.assertRaises(AlreadyProvisionedError):
            admin_create_account(payment.pk)
        self.assertEqual(Membership.objects.count(), 1)


class MembershipEndpointTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(
            username="admin", email="admin@example.com", password="secret12", is_admin=True
        )
        self.member = user_model.objects.create_user(username="member", email="member@example.com", password="secret12")

    def test_members_area_requires_active_membership(self):
        url = reverse("memberships:members_area")
        self.assertEqual(self.client.get(url).status_code, 401)

        self.client.force_login(self.member)
        self.assertEqual(self.client.get(url).status_code, 403)

        membership = make_membership(self.member, expires_at=timezone.now() + timedelta(days=60))
        response = self.client.get(url)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["membership"]["username"], membership.username)
        self.assertNotIn("password_hash", response.json()["membership"])

    def test_members_area_closes_when_membership_expires(self):
        membership = make_membership(self.member, expires_at=timezone.now() - timedelta(minutes=1))
        self.client.force_login(self.member)

        self.assertEqual(self.client.get(reverse("memberships:members_area")).status_code, 403)
        membership.refresh_from_db()
        self.assertFalse(membership.is_active)

    def test_admin_endpoints_require_admin(self):
        url = reverse("admin_subscriptions")
        self.assertEqual(self.client.get(url).status_code, 401)
        self.client.force_login(self.member)
        self.assertEqual(self.client.get(url).status_code, 403)

    def test_subscription_list_filters_and_paginates(self):
        for i in range(3):
            make_payment(email=f"c{i}@example.com", status=Payment.Status.PENDING, seller="tokyo")
        make_payment(email="other@example.com", plan_type=Payment.PlanType.PREMIUM)
        self.client.force_login(self.admin)

        response = self.client.get(reverse("admin_subscriptions"), {"status": "pending", "pageSize": 2})
        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(body["subscriptions"]), 2)
        self.assertEqual(body["pagination"]["total"], 3)
        self.assertEqual(body["pagination"]["totalPages"], 2)

        body = self.client.get(reverse("admin_subscriptions"), {"planType": "premium"}).json()
        self.assertEqual([s["customerEmail"] for s in body["subscriptions"]], ["other@example.com"])

        body = self.client.get(reverse("admin_subscriptions"), {"search": "c1@"}).json()
        self.assertEqual(len(body["subscriptions"]), 1)

        body = self.client.get(reverse("admin_subscriptions"), {"pageSize": 1000}).json()
        self.assertEqual(body["pagination"]["pageSize"], 100)

    def test_subscription_patch_toggles_membership(self):
        membership = make_membership(self.member, expires_at=timezone.now() + timedelta(days=60))
        self.client.force_login(self.admin)
        url = reverse("admin_subscription_detail", args=[membership.payment_id])

        response = self.client.patch(url, {"isActive": False}, content_type="application/json")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["subscription"]["membership"]["isActive"])
        membership.refresh_from_db()
        self.assertFalse(membership.is_active)

        response = self.client.patch(url, {"isActive": "no"}, content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_subscription_patch_corrects_status(self):
        payment = make_payment(status=Payment.Status.FAILED)
        self.client.force_login(self.admin)
        url = reverse("admin_subscription_detail", args=[payment.pk])

        response = self.client.patch(url, {"status": "completed"}, content_type="application/json")

        self.assertEqual(response.status_code, 200)
        payment.refresh_from_db()
        self.assertEqual(payment.status, Payment.Status.COMPLETED)
        self.assertEqual(
            self.client.patch(url, {"isActive": True}, content_type="application/json").status_code,
            404,
        )

    def test_create_account_endpoint(self):
        payment = make_payment(status=Payment.Status.PENDING, email="walkin@example.com")
        self.client.force_login(self.admin)
        url = reverse("admin_subscription_create_account", args=[payment.pk])

        response = self.client.post(url)
        self.assertEqual(response.status_code, 200)
        self.assertRegex(response.json()["membership"]["password"], r"^[0-9a-f]{16}$")

        self.assertEqual(self.client.post(url).status_code, 409)
        self.assertEqual(self.client.post(reverse("admin_subscription_create_account", args=["nope"])).status_code, 404)

    def test_dashboard(self):
        make_membership(self.member, expires_at=timezone.now() + timedelta(days=10))
        make_payment(status=Payment.Status.PENDING)
        self.client.force_login(self.admin)

        body = self.client.get(reverse("admin_dashboard")).json()

        self.assertEqual(body["stats"]["totalPayments"], 2)
        self.assertEqual(body["stats"]["activeMemberships"], 1)
        self.assertEqual(body["stats"]["revenueLast30Days"], "55000.00")
        self.assertEqual(len(body["expiringMemberships"]), 1)
        self.assertEqual(
            sorted((row["status"], row["count"]) for row in body["paymentStats"]),
            [("completed", 1), ("pending", 1)],
        )
