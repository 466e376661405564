from concurrent.futures import Future
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.catalog.models import Product, Unit, UnitConversion
from apps.common.exceptions import InsufficientStock, LedgerValidationError, UnresolvedReference
from apps.inventory.allocation import Allocation, Candidate, allocate, plan_fifo, plan_pinned
from apps.inventory.cleanup import CleanupQueue, CleanupScope, cleanup_empty_batches, run_cleanup, schedule_cleanup
from apps.inventory.models import Stock, StockBatch, StockBatchQuerySet
from apps.inventory.rebalance import RowState, rebalance
from apps.inventory.services import (
    add_stock_to_latest_batch,
    apply_unit_delta,
    create_batch,
    get_row,
    list_batches_for_product,
    track_unit,
    update_batch_prices,
)
from apps.maintains.models import Maintains

User = get_user_model()

KG = "kg"
BOX = "box"
BAG = "bag"


def rows(**quantities):
    factors = {KG: Decimal("1"), BOX: Decimal("10"), BAG: Decimal("25")}
    return [RowState(unit_id=unit, quantity=Decimal(value), factor=factors[unit]) for unit, value in quantities.items()]


def as_dict(states):
    return {state.unit_id: state.quantity for state in states}


class RebalanceTests(SimpleTestCase):
    def test_selling_boxes_reduces_main_unit_proportionally(self):
        result = as_dict(rebalance(rows(kg="100", box="10"), BOX, Decimal("-2"), main_unit_id=KG))
        self.assertEqual(result, {KG: Decimal("80.000"), BOX: Decimal("8.000")})

    def test_selling_main_unit_reduces_siblings(self):
        result = as_dict(rebalance(rows(kg="100", box="10", bag="4"), KG, Decimal("-50"), main_unit_id=KG))
        self.assertEqual(result[KG], Decimal("50.000"))
        self.assertEqual(result[BOX], Decimal("5.000"))
        self.assertEqual(result[BAG], Decimal("2.000"))

    def test_ratio_between_rows_is_preserved(self):
        states = rows(kg="120", box="12", bag="4.8")
        for unit, delta in ((BOX, "-3"), (KG, "-7.5"), (BAG, "1"), (BOX, "2")):
            states = rebalance(states, unit, Decimal(delta), main_unit_id=KG)
            current = as_dict(states)
            self.assertAlmostEqual(float(current[KG] / current[BOX]), 10.0, places=2)
            self.assertAlmostEqual(float(current[KG] / current[BAG]), 25.0, places=2)

    def test_removing_more_than_row_holds_is_rejected(self):
        with self.assertRaises(InsufficientStock) as ctx:
            rebalance(rows(kg="100", box="10"), BOX, Decimal("-11"), main_unit_id=KG)
        self.assertEqual(ctx.exception.fields["available"], Decimal("10"))

    def test_removal_from_untracked_unit_is_insufficient(self):
        with self.assertRaises(InsufficientStock):
            rebalance(rows(kg="100"), BOX, Decimal("-1"), main_unit_id=KG)

    def test_adding_to_untracked_unit_is_unresolved(self):
        with self.assertRaises(UnresolvedReference):
            rebalance(rows(kg="100"), BOX, Decimal("1"), main_unit_id=KG)

    def test_draining_a_row_zeroes_every_row(self):
        result = as_dict(rebalance(rows(kg="100", box="10", bag="3.999"), BOX, Decimal("-10"), main_unit_id=KG))
        self.assertEqual(set(result.values()), {Decimal("0.000")})

    def test_restock_into_empty_batch_uses_conversion_factor(self):
        result = as_dict(rebalance(rows(kg="0", box="0", bag="0"), BOX, Decimal("2"), main_unit_id=KG))
        self.assertEqual(result, {KG: Decimal("20.000"), BOX: Decimal("2.000"), BAG: Decimal("0.800")})

    def test_results_are_never_negative(self):
        states = rows(kg="10", box="1", bag="0.4")
        for _ in range(3):
            states = rebalance(states, KG, Decimal("-3.333"), main_unit_id=KG)
        self.assertTrue(all(state.quantity >= 0 for state in states))


class PlanTests(SimpleTestCase):
    def setUp(self):
        now = timezone.now()
        self.older = Candidate(batch_id=1, created_at=now - timedelta(days=2), available=Decimal("5"))
        self.newer = Candidate(batch_id=2, created_at=now - timedelta(days=1), available=Decimal("5"))

    def test_fifo_draws_oldest_batch_first(self):
        plan = plan_fifo([self.newer, self.older], Decimal("7"))
        self.assertEqual(plan, [Allocation(1, Decimal("5.000")), Allocation(2, Decimal("2.000"))])

    def test_equal_timestamps_fall_back_to_batch_id(self):
        same = timezone.now()
        plan = plan_fifo(
            [Candidate(9, same, Decimal("1")), Candidate(3, same, Decimal("1"))],
            Decimal("1"),
        )
        self.assertEqual(plan[0].batch_id, 3)

    def test_fifo_shortfall_reports_total_available(self):
        with self.assertRaises(InsufficientStock) as ctx:
            plan_fifo([self.older, self.newer], Decimal("11"))
        self.assertEqual(ctx.exception.fields["available"], Decimal("10.000"))

    def test_pinned_batch_never_spills_over(self):
        self.assertEqual(plan_pinned(self.newer, Decimal("5")), [Allocation(2, Decimal("5.000"))])
        with self.assertRaises(InsufficientStock):
            plan_pinned(self.newer, Decimal("6"))

    def test_quantity_below_precision_plans_nothing(self):
        self.assertEqual(plan_fifo([self.older], Decimal("0.0004")), [])
        self.assertEqual(plan_pinned(self.newer, Decimal("0.0004")), [])


class LedgerFixtureMixin:
    def build_ledger(self):
        self.admin = User.objects.create_user(username="admin", password="admin123", role="ADMIN")
        self.seller = User.objects.create_user(username="seller", password="seller123", role="SELLER")
        self.outlet = Maintains.objects.create(name="Main outlet", kind="OUTLET")
        self.other_outlet = Maintains.objects.create(name="Second outlet", kind="OUTLET")
        self.kg = Unit.objects.create(name="kg")
        self.box = Unit.objects.create(name="box")
        self.bag = Unit.objects.create(name="bag")
        self.rice = Product.objects.create(sku="RICE-1", name="Rice", main_unit=self.kg)
        UnitConversion.objects.create(product=self.rice, unit=self.box, conversion_factor=Decimal("10"))

    def prices(self, kg="80.00", box="750.00"):
        return {self.kg.id: Decimal(kg), self.box.id: Decimal(box)}

    def quantities(self, batch):
        return {row.unit_id: row.quantity for row in Stock.objects.filter(batch=batch)}

    def age(self, batch, days):
        StockBatch.objects.filter(pk=batch.pk).update(created_at=timezone.now() - timedelta(days=days))


class BatchServiceTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.build_ledger()

    def test_create_batch_writes_one_row_per_unit(self):
        batch = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("100"), unit_prices=self.prices(), actor=self.admin)
        self.assertEqual(self.quantities(batch), {self.kg.id: Decimal("100.000"), self.box.id: Decimal("10.000")})
        self.assertEqual(Stock.objects.get(batch=batch, unit=self.box).price_per_quantity, Decimal("750.00"))
        self.assertTrue(batch.batch_number)

    def test_create_batch_requires_price_for_every_unit(self):
        with self.assertRaises(LedgerValidationError):
            create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("10"), unit_prices={self.kg.id: "80"})
        self.assertFalse(StockBatch.objects.exists())

    def test_create_batch_requires_main_unit(self):
        loose = Product.objects.create(name="Loose")
        with self.assertRaises(UnresolvedReference) as ctx:
            create_batch(product=loose, maintains=self.outlet, main_quantity=Decimal("1"), unit_prices={})
        self.assertEqual(ctx.exception.error_code, "main_unit_missing")

    def test_row_and_batch_lookups(self):
        batch = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("100"), unit_prices=self.prices())
        self.assertEqual(get_row(batch, self.box).quantity, Decimal("10.000"))
        with self.assertRaises(UnresolvedReference):
            get_row(batch, self.bag)

        StockBatch.objects.filter(pk=batch.pk).update(is_deleted=True)
        self.assertEqual(list_batches_for_product(self.rice, self.outlet), [])
        self.assertEqual(list_batches_for_product(self.rice, self.outlet, include_deleted=True), [batch])

    def test_round_trip_of_box_sale(self):
        batch = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("100"), unit_prices=self.prices())
        apply_unit_delta(batch=batch, unit_id=self.box.id, delta=Decimal("-2"))
        self.assertEqual(self.quantities(batch), {self.kg.id: Decimal("80.000"), self.box.id: Decimal("8.000")})
        apply_unit_delta(batch=batch, unit_id=self.box.id, delta=Decimal("2"))
        self.assertEqual(self.quantities(batch), {self.kg.id: Decimal("100.000"), self.box.id: Decimal("10.000")})

    def test_restock_goes_into_latest_batch(self):
        first = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("10"), unit_prices=self.prices())
        self.age(first, 3)
        latest = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("20"), unit_prices=self.prices())

        restocked = add_stock_to_latest_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("30"), actor=self.admin)
        self.assertEqual(restocked.pk, latest.pk)
        self.assertEqual(self.quantities(latest)[self.kg.id], Decimal("50.000"))
        self.assertEqual(self.quantities(latest)[self.box.id], Decimal("5.000"))
        self.assertEqual(self.quantities(first)[self.kg.id], Decimal("10.000"))

    def test_restock_without_batch_opens_one(self):
        batch = add_stock_to_latest_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("5"), unit_prices=self.prices())
        self.assertEqual(self.quantities(batch)[self.box.id], Decimal("0.500"))

    def test_restock_after_sell_out_reuses_last_prices(self):
        sold = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("10"), unit_prices=self.prices(box="720.00"))
        apply_unit_delta(batch=sold, unit_id=self.kg.id, delta=Decimal("-10"))
        cleanup_empty_batches(self.rice.id, self.outlet.id)

        fresh = add_stock_to_latest_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("20"), actor=self.admin)
        self.assertNotEqual(fresh.pk, sold.pk)
        self.assertEqual(self.quantities(fresh), {self.kg.id: Decimal("20.000"), self.box.id: Decimal("2.000")})
        self.assertEqual(Stock.objects.get(batch=fresh, unit=self.box).price_per_quantity, Decimal("720.00"))

    def test_track_unit_is_sized_from_main_row(self):
        batch = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("100"), unit_prices=self.prices())
        UnitConversion.objects.create(product=self.rice, unit=self.bag, conversion_factor=Decimal("25"))
        row = track_unit(batch=batch, unit=self.bag, price=Decimal("1900"), actor=self.admin)
        self.assertEqual(row.quantity, Decimal("4.000"))
        with self.assertRaises(LedgerValidationError):
            track_unit(batch=batch, unit=self.bag, price=Decimal("1900"))

    def test_update_prices_rejects_untracked_units(self):
        batch = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("100"), unit_prices=self.prices())
        update_batch_prices(batch=batch, unit_prices={self.box.id: "700"}, actor=self.admin)
        self.assertEqual(Stock.objects.get(batch=batch, unit=self.box).price_per_quantity, Decimal("700.00"))
        with self.assertRaises(UnresolvedReference):
            update_batch_prices(batch=batch, unit_prices={self.bag.id: "10"})


class AllocationTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.build_ledger()
        self.old = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("5"), unit_prices=self.prices())
        self.age(self.old, 2)
        self.new = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("5"), unit_prices=self.prices())
        self.age(self.new, 1)

    def test_fifo_plan_spans_batches(self):
        plan = allocate(self.rice.id, self.outlet.id, self.kg.id, Decimal("7"))
        self.assertEqual(plan, [Allocation(self.old.id, Decimal("5.000")), Allocation(self.new.id, Decimal("2.000"))])

    def test_preview_is_idempotent(self):
        first = allocate(self.rice.id, self.outlet.id, self.kg.id, Decimal("7"))
        second = allocate(self.rice.id, self.outlet.id, self.kg.id, Decimal("7"))
        self.assertEqual(first, second)
        self.assertEqual(self.quantities(self.old)[self.kg.id], Decimal("5.000"))

    def test_other_location_stock_is_ignored(self):
        with self.assertRaises(InsufficientStock):
            allocate(self.rice.id, self.other_outlet.id, self.kg.id, Decimal("1"))

    def test_pinned_batch_from_another_location_is_unresolved(self):
        with self.assertRaises(UnresolvedReference):
            allocate(self.rice.id, self.other_outlet.id, self.kg.id, Decimal("1"), batch_id=self.old.id)

    def test_pinned_batch_does_not_spill(self):
        with self.assertRaises(InsufficientStock):
            allocate(self.rice.id, self.outlet.id, self.kg.id, Decimal("6"), batch_id=self.new.id)


class CleanupTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.build_ledger()

    def test_empty_batch_is_retired_when_another_has_stock(self):
        empty = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("0"), unit_prices=self.prices())
        stocked = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("3"), unit_prices=self.prices())

        self.assertEqual(cleanup_empty_batches(self.rice.id, self.outlet.id), [empty.id])
        empty.refresh_from_db()
        stocked.refresh_from_db()
        self.assertTrue(empty.is_deleted)
        self.assertFalse(stocked.is_deleted)

    def test_sold_out_single_batch_is_retired(self):
        only = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("20"), unit_prices=self.prices())
        apply_unit_delta(batch=only, unit_id=self.box.id, delta=Decimal("-2"))

        self.assertEqual(cleanup_empty_batches(self.rice.id, self.outlet.id), [only.id])
        only.refresh_from_db()
        self.assertTrue(only.is_deleted)
        self.assertEqual(list_batches_for_product(self.rice, self.outlet), [])

    def test_cleanup_locks_batches_without_blocking_key_share(self):
        query = StockBatch.objects.locked().query
        self.assertTrue(query.select_for_update)
        self.assertTrue(query.select_for_update_no_key)
        self.assertEqual(query.select_for_update_of, ("self",))

        create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("0"), unit_prices=self.prices())
        real_locked = StockBatchQuerySet.locked
        with mock.patch.object(StockBatchQuerySet, "locked", autospec=True, side_effect=real_locked) as locked:
            cleanup_empty_batches(self.rice.id, self.outlet.id)
        locked.assert_called()

    @override_settings(STOCK_CLEANUP_ASYNC=False)
    def test_cleanup_runs_after_commit(self):
        empty = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("0"), unit_prices=self.prices())
        create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("3"), unit_prices=self.prices())

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            schedule_cleanup([(self.rice.id, self.outlet.id), (self.rice.id, self.outlet.id)])
        self.assertEqual(len(callbacks), 1)
        empty.refresh_from_db()
        self.assertTrue(empty.is_deleted)

    def test_management_command_cleans_every_scope(self):
        empty = create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("0"), unit_prices=self.prices())
        create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("3"), unit_prices=self.prices())
        elsewhere = create_batch(product=self.rice, maintains=self.other_outlet, main_quantity=Decimal("0"), unit_prices=self.prices())

        out = StringIO()
        call_command("cleanup_empty_batches", stdout=out)
        self.assertIn("Retired batches: 2", out.getvalue())
        empty.refresh_from_db()
        elsewhere.refresh_from_db()
        self.assertTrue(empty.is_deleted)
        self.assertTrue(elsewhere.is_deleted)

    def test_failed_job_is_logged_not_raised(self):
        with mock.patch("apps.inventory.cleanup.cleanup_empty_batches", side_effect=RuntimeError("boom")):
            with self.assertLogs("apps.inventory.cleanup", level="ERROR"):
                self.assertEqual(run_cleanup(CleanupScope(self.rice.id, self.outlet.id)), [])


class CleanupQueueTests(SimpleTestCase):
    def test_failing_job_does_not_stop_the_worker(self):
        queue = CleanupQueue(max_workers=1)
        calls = []

        def fake_cleanup(product_id, maintains_id):
            calls.append(product_id)
            if product_id == "bad":
                raise RuntimeError("boom")
            return [1]

        with mock.patch("apps.inventory.cleanup.cleanup_empty_batches", side_effect=fake_cleanup), mock.patch(
            "apps.inventory.cleanup.close_old_connections"
        ), self.assertLogs("apps.inventory.cleanup", level="ERROR"):
            failed = queue.submit(CleanupScope("bad", "m"))
            ok = queue.submit(CleanupScope("good", "m"))
            self.assertTrue(queue.drain(timeout=5))

        self.assertIsInstance(failed, Future)
        self.assertEqual(failed.result(), [])
        self.assertEqual(ok.result(), [1])
        self.assertEqual(calls, ["bad", "good"])
        queue.shutdown()

    def test_closed_queue_refuses_jobs(self):
        queue = CleanupQueue()
        queue.shutdown()
        with self.assertLogs("apps.inventory.cleanup", level="WARNING") as logs:
            self.assertIsNone(queue.submit(CleanupScope("p", "m")))
        self.assertIn("Cleanup queue closed, not accepting", logs.output[0])


class InventoryApiTests(LedgerFixtureMixin, APITestCase):
    def setUp(self):
        self.build_ledger()

    def auth_as(self, username, password):
        response = self.client.post("/api/v1/auth/token/", {"username": username, "password": password}, format="json")
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")

    def intake_payload(self, quantity="100"):
        return {
            "product_id": str(self.rice.id),
            "maintains_id": str(self.outlet.id),
            "quantity": quantity,
            "unit_prices": [
                {"unit_id": str(self.kg.id), "price": "80.00"},
                {"unit_id": str(self.box.id), "price": "750.00"},
            ],
        }

    def test_intake_creates_batch_with_rows(self):
        self.auth_as("admin", "admin123")
        response = self.client.post("/api/v1/inventory/batches/", self.intake_payload(), format="json")
        self.assertEqual(response.status_code, 201)
        quantities = {row["unit_name"]: row["quantity"] for row in response.data["rows"]}
        self.assertEqual(quantities, {"kg": "100.000", "box": "10.000"})

    def test_seller_cannot_receive_stock(self):
        self.auth_as("seller", "seller123")
        response = self.client.post("/api/v1/inventory/batches/", self.intake_payload(), format="json")
        self.assertEqual(response.status_code, 403)

    def test_intake_for_unknown_product_returns_error_shape(self):
        self.auth_as("admin", "admin123")
        payload = self.intake_payload()
        payload["product_id"] = "00000000-0000-0000-0000-000000000000"
        response = self.client.post("/api/v1/inventory/batches/", payload, format="json")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["code"], "unresolved_reference")
        self.assertIn("product_id", response.data["fields"])

    def test_restock_and_preview(self):
        self.auth_as("admin", "admin123")
        self.client.post("/api/v1/inventory/batches/", self.intake_payload("10"), format="json")
        restock = self.client.post(
            "/api/v1/inventory/batches/restock/",
            {"product_id": str(self.rice.id), "maintains_id": str(self.outlet.id), "quantity": "5"},
            format="json",
        )
        self.assertEqual(restock.status_code, 200)

        preview = self.client.post(
            "/api/v1/inventory/allocation-preview/",
            {"product_id": str(self.rice.id), "maintains_id": str(self.outlet.id), "unit": "box", "quantity": "1"},
            format="json",
        )
        self.assertEqual(preview.status_code, 200)
        self.assertEqual(preview.data["allocations"], [{"batch_id": restock.data["id"], "quantity": "1.000"}])

        too_much = self.client.post(
            "/api/v1/inventory/allocation-preview/",
            {"product_id": str(self.rice.id), "maintains_id": str(self.outlet.id), "unit": "box", "quantity": "2"},
            format="json",
        )
        self.assertEqual(too_much.status_code, 409)
        self.assertEqual(too_much.data["code"], "insufficient_stock")

    def test_stock_summary_flags_low_stock(self):
        self.auth_as("seller", "seller123")
        create_batch(product=self.rice, maintains=self.outlet, main_quantity=Decimal("4"), unit_prices=self.prices())
        response = self.client.get(f"/api/v1/inventory/stocks/?product={self.rice.id}&maintains={self.outlet.id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_main_quantity"], "4.000")
        self.assertTrue(response.data["low_stock"])
