import datetime
import io
import uuid

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.test import TestCase
from rest_framework.test import APIClient

from billing.models import MonthlyPayment
from billing.payments import apply_top_up
from core.models import AuditLog
from customers.models import Customer
from customers.services import assign_delivery_person, register_customer, subscribe


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="rider-token",
            email="Rider@Example.com",
            password="pass1234",
            role="delivery",
        )

    def test_login_with_email_or_username(self):
        by_email = self.client.post(
            "/api/v1/token/",
            {"username": "rider@example.com", "password": "pass1234"},
            format="json",
        )
        by_username = self.client.post(
            "/api/v1/token/",
            {"username": "rider-token", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(by_email.status_code, 200)
        self.assertIn("access", by_email.json())
        self.assertEqual(by_username.status_code, 200)

    def test_bad_credentials_use_error_envelope(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "rider-token", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(sorted(response.json().keys()), ["code", "errors", "message", "status"])


class RolePermissionCoreTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.rider = self.user_model.objects.create_user(username="rider-core", password="pass1234", role="delivery")
        self.admin = self.user_model.objects.create_user(username="admin-core", password="pass1234", role="admin")

    def test_rider_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.rider)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_missing_record_returns_not_found_envelope(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get(f"/api/v1/customers/{uuid.uuid4()}/status/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_anonymous_requests_are_rejected(self):
        response = self.client.get("/api/v1/deliveries/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.rider = self.user_model.objects.create_user(username="audit-rider", password="pass1234", role="delivery")

    def test_assignment_writes_audit_log_with_request_id(self):
        customer = register_customer(name="Audit")
        subscribe(customer.id, 500)
        apply_top_up(customer.id, 5000)
        self.client.force_authenticate(user=self.admin)

        res = self.client.post(
            f"/api/v1/admin/customers/{customer.id}/assign/",
            {"delivery_person_id": str(self.rider.id)},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 200)
        log = AuditLog.objects.get(action="customer.assign", entity="customer", request_id="req-123")
        self.assertEqual(log.entity_id, str(customer.id))
        self.assertEqual(log.actor, self.admin)

        listing = self.client.get("/api/v1/admin/audit-logs/", {"entity_id": str(customer.id)})
        self.assertEqual(listing.json()["count"], 1)

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)


class HealthTests(TestCase):
    def test_health_and_readiness(self):
        client = APIClient()

        health = client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="health-1")
        ready = client.get("/api/v1/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["request_id"], "health-1")
        self.assertEqual(health["X-Request-ID"], "health-1")
        self.assertEqual(ready.json()["status"], "ready")


class RunBillingJobsCommandTests(TestCase):
    def setUp(self):
        rider = get_user_model().objects.create_user(username="rider", password="pass1234", role="delivery")
        today = datetime.date(2026, 2, 28)
        self.customer = register_customer(name="Cron")
        subscribe(self.customer.id, 1000, today=today)
        apply_top_up(self.customer.id, 27000, today=today)
        assign_delivery_person(self.customer.id, rider.id, today=today)

    def test_list_jobs(self):
        out = io.StringIO()
        call_command("run_billing_jobs", "--list", stdout=out)

        self.assertEqual(
            out.getvalue().split(),
            ["monthly_records", "overdue_enforcement", "penalty_sweep", "status_refresh", "delivery_schedule"],
        )

    def test_single_job_for_date(self):
        out = io.StringIO()
        call_command("run_billing_jobs", "--job", "monthly_records", "--date", "2026-03-01", stdout=out)

        payment = MonthlyPayment.objects.get(customer=self.customer, year=2026, month=3)
        self.assertEqual(payment.status, MonthlyPayment.Status.PENDING)
        self.assertEqual(payment.amount_due, 341000 - 20000)
        self.assertIn('"created": 1', out.getvalue())

    def test_due_jobs_after_grace_day(self):
        call_command("run_billing_jobs", "--date", "2026-03-01", stdout=io.StringIO())
        out = io.StringIO()
        call_command("run_billing_jobs", "--date", "2026-03-08", stdout=out)

        self.assertIn("overdue_enforcement: ok", out.getvalue())
        self.assertEqual(
            MonthlyPayment.objects.get(customer=self.customer, year=2026, month=3).status,
            MonthlyPayment.Status.OVERDUE,
        )
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.status, Customer.Status.INACTIVE)

    def test_bad_arguments(self):
        with self.assertRaises(CommandError):
            call_command("run_billing_jobs", "--date", "03/08/2026", stdout=io.StringIO())
        with self.assertRaises(CommandError):
            call_command("run_billing_jobs", "--job", "missing", stdout=io.StringIO())


class SeedDemoDataCommandTests(TestCase):
    def test_seed_is_repeatable(self):
        call_command("seed_demo_data", stdout=io.StringIO())
        call_command("seed_demo_data", stdout=io.StringIO())

        self.assertEqual(Customer.objects.count(), 3)
        self.assertTrue(get_user_model().objects.filter(username="rider", role="delivery").exists())
        self.assertFalse(Customer.objects.filter(delivery_person__isnull=True).exists())
