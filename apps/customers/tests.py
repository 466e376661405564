from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APITestCase

from apps.common.exceptions import LedgerValidationError
from apps.customers.models import Customer, CustomerDue
from apps.customers.services import collect_due, reduce_due_total
from apps.maintains.models import Maintains

User = get_user_model()


class DueServiceTests(TestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin", password="admin123", role="ADMIN")
        self.outlet = Maintains.objects.create(name="Main outlet", kind="OUTLET")
        self.customer = Customer.objects.create(name="Rahim", phone="+880 1711 111111")
        self.due = CustomerDue.objects.create(
            customer=self.customer,
            maintains=self.outlet,
            total_amount=Decimal("100.00"),
            created_by=self.admin,
        )

    def test_phone_is_normalized(self):
        self.assertEqual(self.customer.phone_normalized, "8801711111111")
        self.assertEqual(Customer.get_or_create_by_phone("880-1711-111111").pk, self.customer.pk)

    def test_collection_appends_history(self):
        collect_due(due_id=self.due.id, amount=Decimal("40"), actor=self.admin, note="first")
        collect_due(due_id=self.due.id, amount=Decimal("60"), actor=self.admin)
        self.due.refresh_from_db()
        self.assertEqual(self.due.paid_amount, Decimal("100.00"))
        self.assertEqual(self.due.balance, Decimal("0.00"))
        self.assertEqual(
            sorted(self.due.updates.values_list("collected_amount", flat=True)),
            [Decimal("40.00"), Decimal("60.00")],
        )

    def test_over_collection_is_rejected(self):
        with self.assertRaises(LedgerValidationError):
            collect_due(due_id=self.due.id, amount=Decimal("100.01"), actor=self.admin)
        with self.assertRaises(LedgerValidationError):
            collect_due(due_id=self.due.id, amount=Decimal("0"), actor=self.admin)

    def test_reduce_total_refuses_to_go_below_paid(self):
        collect_due(due_id=self.due.id, amount=Decimal("70"), actor=self.admin)
        with self.assertRaises(LedgerValidationError) as ctx:
            reduce_due_total(due_id=self.due.id, amount=Decimal("50"), actor=self.admin)
        self.assertEqual(ctx.exception.error_code, "due_already_collected")

        reduce_due_total(due_id=self.due.id, amount=Decimal("30"), actor=self.admin)
        self.due.refresh_from_db()
        self.assertEqual(self.due.total_amount, Decimal("70.00"))


class CustomerApiTests(APITestCase):
    def setUp(self):
        self.seller = User.objects.create_user(username="seller", password="seller123", role="SELLER")
        self.outlet = Maintains.objects.create(name="Main outlet", kind="OUTLET")

    def auth_as(self, username, password):
        response = self.client.post("/api/v1/auth/token/", {"username": username, "password": password}, format="json")
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")

    def test_duplicate_phone_is_rejected(self):
        self.auth_as("seller", "seller123")
        first = self.client.post("/api/v1/customers/", {"name": "Rahim", "phone": "01711-111111"}, format="json")
        self.assertEqual(first.status_code, 201)
        second = self.client.post("/api/v1/customers/", {"name": "Other", "phone": "01711111111"}, format="json")
        self.assertEqual(second.status_code, 400)
        self.assertIn("phone", second.data["fields"])

    def test_collect_endpoint_returns_history(self):
        self.auth_as("seller", "seller123")
        customer = Customer.objects.create(name="Rahim", phone="01711111111")
        due = CustomerDue.objects.create(
            customer=customer,
            maintains=self.outlet,
            total_amount=Decimal("50.00"),
            created_by=self.seller,
        )
        response = self.client.post(f"/api/v1/customer-dues/{due.id}/collect/", {"amount": "20.00"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"], "30.00")
        self.assertEqual(len(response.data["updates"]), 1)

        too_much = self.client.post(f"/api/v1/customer-dues/{due.id}/collect/", {"amount": "31.00"}, format="json")
        self.assertEqual(too_much.status_code, 400)
        self.assertEqual(too_much.data["code"], "validation_error")
