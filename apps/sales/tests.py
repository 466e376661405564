from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import OperationalError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.catalog.models import Product, Unit, UnitConversion
from apps.common.exceptions import InsufficientStock, LedgerValidationError, TransactionConflict
from apps.customers.models import Customer, CustomerDue
from apps.customers.services import collect_due
from apps.inventory.models import Stock, StockBatch
from apps.inventory.services import create_batch
from apps.maintains.models import Maintains
from apps.sales import services as sale_services
from apps.sales.models import Payment, PaymentStatus, Sale, SaleAllocation, SaleStatus
from apps.sales.services import (
    PaymentInput,
    SaleLineInput,
    cancel_payment,
    create_sale,
    line_amounts,
    validate_sale_request,
)

User = get_user_model()


class SaleFixtureMixin:
    def build_shop(self):
        self.admin = User.objects.create_user(username="admin", password="admin123", role="ADMIN")
        self.seller = User.objects.create_user(username="seller", password="seller123", role="SELLER")
        self.outlet = Maintains.objects.create(name="Dhanmondi outlet", kind="OUTLET")
        self.kg = Unit.objects.create(name="kg")
        self.box = Unit.objects.create(name="box")
        self.rice = Product.objects.create(sku="RICE-1", name="Rice", main_unit=self.kg)
        UnitConversion.objects.create(product=self.rice, unit=self.box, conversion_factor=Decimal("10"))
        self.oil = Product.objects.create(sku="OIL-1", name="Oil", main_unit=self.kg)
        self.customer = Customer.objects.create(name="Karim", phone="01711-000000")

        self.old_batch = self.receive(self.rice, "5", days_ago=2)
        self.new_batch = self.receive(self.rice, "5", days_ago=1)
        self.oil_batch = self.receive(self.oil, "3", days_ago=1, prices={"kg": "200.00"})

    def receive(self, product, quantity, days_ago=0, prices=None):
        prices = prices or {"kg": "80.00", "box": "750.00"}
        units = {"kg": self.kg, "box": self.box}
        batch = create_batch(
            product=product,
            maintains=self.outlet,
            main_quantity=Decimal(quantity),
            unit_prices={units[name].id: Decimal(price) for name, price in prices.items()},
        )
        StockBatch.objects.filter(pk=batch.pk).update(created_at=timezone.now() - timedelta(days=days_ago))
        return batch

    def quantity(self, batch, unit=None):
        return Stock.objects.get(batch=batch, unit=unit or self.kg).quantity


class SaleServiceTests(SaleFixtureMixin, TestCase):
    def setUp(self):
        self.build_shop()

    def line(self, product=None, quantity="1", price="80", unit="kg", **extra):
        return SaleLineInput(
            product_id=(product or self.rice).id,
            quantity=Decimal(quantity),
            price_per_quantity=Decimal(price),
            unit_name=unit,
            **extra,
        )

    def test_line_amounts_apply_discounts(self):
        self.assertEqual(line_amounts(Decimal("2"), Decimal("750"), Decimal("10"), "Percentage")[2], Decimal("1350.00"))
        self.assertEqual(line_amounts(Decimal("2"), Decimal("750"), Decimal("50"), "Fixed")[2], Decimal("1450.00"))

    def test_validation_rejects_unbalanced_payments(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            validate_sale_request([self.line(quantity="2")], [PaymentInput("cash", Decimal("150"))])
        self.assertEqual(ctx.exception.fields["field"], "payment_info")

    def test_validation_rejects_wrong_discounted_total(self):
        with self.assertRaises(LedgerValidationError):
            validate_sale_request(
                [self.line(quantity="2")],
                [PaymentInput("cash", Decimal("160"))],
                total_with_discount=Decimal("150"),
            )

    def test_due_payment_needs_customer(self):
        with self.assertRaises(LedgerValidationError) as ctx:
            validate_sale_request([self.line()], [PaymentInput("due", Decimal("80"))])
        self.assertEqual(ctx.exception.fields["field"], "customer_id")

    def test_sale_draws_oldest_batch_first(self):
        result = create_sale(
            lines=[self.line(quantity="7", price="80")],
            payments=[PaymentInput("cash", Decimal("560"))],
            maintains_id=self.outlet.id,
            actor=self.seller,
        )
        sale = result.sales[0]
        allocations = list(SaleAllocation.objects.filter(sale=sale).order_by("position"))
        self.assertEqual([(a.batch_id, a.quantity) for a in allocations], [(self.old_batch.id, Decimal("5.000")), (self.new_batch.id, Decimal("2.000"))])
        self.assertEqual(self.quantity(self.old_batch), Decimal("0.000"))
        self.assertEqual(self.quantity(self.new_batch), Decimal("3.000"))
        self.assertEqual(self.quantity(self.new_batch, self.box), Decimal("0.300"))
        self.assertEqual(sale.batch_id, self.old_batch.id)

    def test_box_sale_records_main_unit_quantity_and_price(self):
        result = create_sale(
            lines=[self.line(quantity="0.5", price="750", unit="box", stock_batch_id=self.new_batch.id)],
            payments=[PaymentInput("cash", Decimal("375"))],
            maintains_id=self.outlet.id,
            actor=self.seller,
        )
        sale = result.sales[0]
        self.assertEqual(sale.quantity_in_main_unit, Decimal("5.000"))
        self.assertEqual(sale.main_unit_price, Decimal("80.00"))
        self.assertEqual(sale.batch_id, self.new_batch.id)
        self.assertEqual(self.quantity(self.old_batch), Decimal("5.000"))
        self.assertEqual(self.quantity(self.new_batch), Decimal("0.000"))

    def test_failing_line_rolls_back_whole_sale(self):
        with self.assertRaises(InsufficientStock):
            create_sale(
                lines=[
                    self.line(quantity="2", price="80"),
                    self.line(product=self.oil, quantity="1", price="200"),
                    self.line(product=self.oil, quantity="5", price="200"),
                ],
                payments=[PaymentInput("cash", Decimal("1360"))],
                maintains_id=self.outlet.id,
                actor=self.seller,
            )
        self.assertFalse(Sale.objects.exists())
        self.assertFalse(Payment.objects.exists())
        self.assertEqual(self.quantity(self.old_batch), Decimal("5.000"))
        self.assertEqual(self.quantity(self.oil_batch), Decimal("3.000"))

    def test_split_payment_creates_linked_due(self):
        result = create_sale(
            lines=[self.line(quantity="1", price="100")],
            payments=[PaymentInput("cash", Decimal("70")), PaymentInput("due", Decimal("30"))],
            maintains_id=self.outlet.id,
            actor=self.seller,
            customer_id=self.customer.id,
        )
        payment = result.payment
        self.assertEqual(payment.payments, {"cash": "70.00", "due": "30.00"})
        self.assertEqual(payment.total_amount, Decimal("100.00"))
        self.assertEqual(payment.customer_due.total_amount, Decimal("30.00"))
        self.assertEqual(payment.customer_due.customer_id, self.customer.id)
        self.assertEqual(list(payment.sales.all()), result.sales)
        self.assertTrue(AuditLog.objects.filter(action="sales.sale.create", entity_id=str(payment.id)).exists())

    @override_settings(STOCK_CLEANUP_ASYNC=False)
    def test_exhausted_batch_is_retired_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True):
            create_sale(
                lines=[self.line(quantity="5", price="80")],
                payments=[PaymentInput("cash", Decimal("400"))],
                maintains_id=self.outlet.id,
                actor=self.seller,
            )
        self.old_batch.refresh_from_db()
        self.new_batch.refresh_from_db()
        self.assertTrue(self.old_batch.is_deleted)
        self.assertFalse(self.new_batch.is_deleted)

    @override_settings(STOCK_CLEANUP_ASYNC=False)
    def test_selling_out_the_only_batch_retires_it(self):
        with self.captureOnCommitCallbacks(execute=True):
            create_sale(
                lines=[self.line(product=self.oil, quantity="3", price="200")],
                payments=[PaymentInput("cash", Decimal("600"))],
                maintains_id=self.outlet.id,
                actor=self.seller,
            )
        self.oil_batch.refresh_from_db()
        self.assertTrue(self.oil_batch.is_deleted)
        self.assertEqual(self.quantity(self.oil_batch), Decimal("0.000"))

    def test_quantity_rounding_to_zero_is_rejected(self):
        for extra in ({}, {"stock_batch_id": self.new_batch.id}):
            with self.assertRaises(LedgerValidationError) as ctx:
                create_sale(
                    lines=[self.line(quantity="0.0004", price="80", **extra)],
                    payments=[PaymentInput("cash", Decimal("0.03"))],
                    maintains_id=self.outlet.id,
                    actor=self.seller,
                )
            self.assertEqual(ctx.exception.fields["field"], "quantity")
        self.assertFalse(Sale.objects.exists())
        self.assertFalse(Payment.objects.exists())
        self.assertEqual(self.quantity(self.new_batch), Decimal("5.000"))

    def assert_rows_agree(self, batch, factors):
        rows = {row.unit_id: row.quantity for row in Stock.objects.filter(batch=batch)}
        main = rows[self.kg.id]
        for unit_id, factor in factors.items():
            self.assertLessEqual(abs(rows[unit_id] * factor - main), Decimal("0.001"))
        return rows

    def test_box_sale_across_batches_keeps_every_unit_consistent(self):
        pack = Unit.objects.create(name="pack")
        flour = Product.objects.create(sku="FLOUR-1", name="Flour", main_unit=self.kg)
        UnitConversion.objects.create(product=flour, unit=self.box, conversion_factor=Decimal("10"))
        UnitConversion.objects.create(product=flour, unit=pack, conversion_factor=Decimal("4"))
        factors = {self.kg.id: Decimal("1"), self.box.id: Decimal("10"), pack.id: Decimal("4")}
        prices = {self.kg.id: Decimal("60"), self.box.id: Decimal("580"), pack.id: Decimal("235")}
        older = create_batch(product=flour, maintains=self.outlet, main_quantity=Decimal("30"), unit_prices=prices)
        newer = create_batch(product=flour, maintains=self.outlet, main_quantity=Decimal("30"), unit_prices=prices)
        StockBatch.objects.filter(pk=older.pk).update(created_at=timezone.now() - timedelta(days=2))
        StockBatch.objects.filter(pk=newer.pk).update(created_at=timezone.now() - timedelta(days=1))

        result = create_sale(
            lines=[SaleLineInput(product_id=flour.id, quantity=Decimal("4"), price_per_quantity=Decimal("580"), unit_name="box")],
            payments=[PaymentInput("cash", Decimal("2320"))],
            maintains_id=self.outlet.id,
            actor=self.seller,
        )
        self.assertEqual(result.sales[0].quantity_in_main_unit, Decimal("40.000"))
        self.assertEqual(
            self.assert_rows_agree(older, factors),
            {self.kg.id: Decimal("0.000"), self.box.id: Decimal("0.000"), pack.id: Decimal("0.000")},
        )
        self.assertEqual(
            self.assert_rows_agree(newer, factors),
            {self.kg.id: Decimal("20.000"), self.box.id: Decimal("2.000"), pack.id: Decimal("5.000")},
        )

        cancel_payment(payment_id=result.payment.id, actor=self.admin, reason="returned")
        for batch in (older, newer):
            self.assertEqual(
                self.assert_rows_agree(batch, factors),
                {self.kg.id: Decimal("30.000"), self.box.id: Decimal("3.000"), pack.id: Decimal("7.500")},
            )

    @override_settings(LEDGER_CONFLICT_BACKOFF_SECONDS=0)
    def test_conflict_is_retried(self):
        real_record = sale_services._record_sale
        calls = []

        def flaky(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise OperationalError("deadlock detected")
            return real_record(**kwargs)

        with mock.patch("apps.sales.services._record_sale", side_effect=flaky), self.assertLogs(
            "apps.common.transactions", level="WARNING"
        ):
            result = create_sale(
                lines=[self.line(quantity="1")],
                payments=[PaymentInput("cash", Decimal("80"))],
                maintains_id=self.outlet.id,
                actor=self.seller,
            )
        self.assertEqual(len(calls), 2)
        self.assertEqual(len(result.sales), 1)

    @override_settings(LEDGER_CONFLICT_BACKOFF_SECONDS=0, LEDGER_CONFLICT_MAX_ATTEMPTS=3)
    def test_persistent_conflict_surfaces_as_transaction_conflict(self):
        with mock.patch(
            "apps.sales.services._record_sale",
            side_effect=OperationalError("could not serialize access due to concurrent update"),
        ) as record, self.assertLogs("apps.common.transactions", level="WARNING"):
            with self.assertRaises(TransactionConflict):
                create_sale(
                    lines=[self.line(quantity="1")],
                    payments=[PaymentInput("cash", Decimal("80"))],
                    maintains_id=self.outlet.id,
                    actor=self.seller,
                )
        self.assertEqual(record.call_count, 3)

    def test_other_database_errors_are_not_retried(self):
        with mock.patch("apps.sales.services._record_sale", side_effect=OperationalError("no such column")) as record:
            with self.assertRaises(OperationalError):
                create_sale(
                    lines=[self.line(quantity="1")],
                    payments=[PaymentInput("cash", Decimal("80"))],
                    maintains_id=self.outlet.id,
                    actor=self.seller,
                )
        self.assertEqual(record.call_count, 1)


class SaleApiTests(SaleFixtureMixin, APITestCase):
    def setUp(self):
        self.build_shop()

    def auth_as(self, username, password):
        response = self.client.post("/api/v1/auth/token/", {"username": username, "password": password}, format="json")
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")

    def sale_payload(self, products, payments, **extra):
        payload = {"maintains_id": str(self.outlet.id), "products": products, "payment_info": payments}
        payload.update(extra)
        return payload

    def rice_line(self, quantity="7", price="80.00", **extra):
        line = {
            "product_id": str(self.rice.id),
            "unit": "kg",
            "quantity": quantity,
            "price_per_quantity": price,
            "discount": "0",
            "discount_type": "Fixed",
        }
        line.update(extra)
        return line

    def test_sale_endpoint_returns_sales_and_payment(self):
        self.auth_as("seller", "seller123")
        response = self.client.post(
            "/api/v1/sales/",
            self.sale_payload([self.rice_line()], [{"method": "cash", "amount": "560.00"}], total_price_with_discount="560.00"),
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.data["sales"]), 1)
        self.assertEqual(response.data["payment"]["total_amount"], "560.00")
        self.assertEqual(response.data["payment"]["status"], PaymentStatus.ACTIVE)

    def test_insufficient_stock_leaves_nothing_behind(self):
        self.auth_as("seller", "seller123")
        response = self.client.post(
            "/api/v1/sales/",
            self.sale_payload(
                [self.rice_line("2"), self.rice_line("3"), self.rice_line("6")],
                [{"method": "cash", "amount": "880.00"}],
            ),
            format="json",
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "insufficient_stock")
        self.assertFalse(Sale.objects.exists())
        self.assertEqual(self.quantity(self.old_batch), Decimal("5.000"))

    def test_due_without_customer_is_rejected(self):
        self.auth_as("seller", "seller123")
        response = self.client.post(
            "/api/v1/sales/",
            self.sale_payload([self.rice_line("1")], [{"method": "due", "amount": "80.00"}]),
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("customer_id", response.data["fields"])

    def test_mismatched_total_is_rejected(self):
        self.auth_as("seller", "seller123")
        response = self.client.post(
            "/api/v1/sales/",
            self.sale_payload(
                [self.rice_line("1", discount="10", discount_type="Percentage")],
                [{"method": "cash", "amount": "72.00"}],
                total_price_with_discount="80.00",
            ),
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "validation_error")
        self.assertEqual(response.data["fields"]["field"], "total_price_with_discount")

    def test_unknown_unit_is_unresolved(self):
        self.auth_as("seller", "seller123")
        response = self.client.post(
            "/api/v1/sales/",
            self.sale_payload([self.rice_line("1", unit="crate")], [{"method": "cash", "amount": "80.00"}]),
            format="json",
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "unresolved_reference")

    def test_cancel_restores_stock_and_due(self):
        self.auth_as("admin", "admin123")
        with override_settings(STOCK_CLEANUP_ASYNC=False), self.captureOnCommitCallbacks(execute=True):
            created = self.client.post(
                "/api/v1/sales/",
                self.sale_payload(
                    [self.rice_line("7")],
                    [{"method": "cash", "amount": "500.00"}, {"method": "due", "amount": "60.00"}],
                    customer_id=str(self.customer.id),
                ),
                format="json",
            )
        self.assertEqual(created.status_code, 201)
        self.old_batch.refresh_from_db()
        self.assertTrue(self.old_batch.is_deleted)

        payment_id = created.data["payment"]["id"]
        response = self.client.post(f"/api/v1/payments/{payment_id}/cancel/", {"reason": "returned"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], PaymentStatus.CANCELED)

        self.old_batch.refresh_from_db()
        self.assertFalse(self.old_batch.is_deleted)
        self.assertEqual(self.quantity(self.old_batch), Decimal("5.000"))
        self.assertEqual(self.quantity(self.old_batch, self.box), Decimal("0.500"))
        self.assertEqual(self.quantity(self.new_batch), Decimal("5.000"))
        self.assertEqual(self.quantity(self.new_batch, self.box), Decimal("0.500"))
        self.assertFalse(Sale.objects.filter(status=SaleStatus.ACTIVE).exists())

        due = CustomerDue.objects.get()
        self.assertEqual(due.total_amount, Decimal("0.00"))
        self.assertEqual(due.updates.count(), 1)

        again = self.client.post(f"/api/v1/payments/{payment_id}/cancel/", {}, format="json")
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.data["code"], "invalid_state")

    def test_cancel_refuses_when_due_already_collected(self):
        self.auth_as("admin", "admin123")
        created = self.client.post(
            "/api/v1/sales/",
            self.sale_payload(
                [self.rice_line("1", "100.00")],
                [{"method": "due", "amount": "100.00"}],
                customer_id=str(self.customer.id),
            ),
            format="json",
        )
        due = CustomerDue.objects.get()
        collect_due(due_id=due.id, amount=Decimal("40"), actor=self.admin)

        response = self.client.post(f"/api/v1/payments/{created.data['payment']['id']}/cancel/", {}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "due_already_collected")
        self.assertEqual(Payment.objects.get().status, PaymentStatus.ACTIVE)
        self.assertEqual(self.quantity(self.old_batch), Decimal("4.000"))

    def test_seller_cannot_cancel_payment(self):
        self.auth_as("seller", "seller123")
        created = self.client.post(
            "/api/v1/sales/",
            self.sale_payload([self.rice_line("1")], [{"method": "cash", "amount": "80.00"}]),
            format="json",
        )
        response = self.client.post(f"/api/v1/payments/{created.data['payment']['id']}/cancel/", {}, format="json")
        self.assertEqual(response.status_code, 403)
