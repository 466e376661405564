from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.catalog.models import Product, Unit, UnitConversion
from apps.catalog.serializers import UnitConversionSerializer
from apps.catalog.services import (
    conversion_factor,
    conversion_map,
    factor_or_identity,
    get_product,
    resolve_unit,
    resolve_unit_by_name,
    to_main_quantity,
)
from apps.common.exceptions import UnresolvedReference

User = get_user_model()


class ResolverTests(TestCase):
    def setUp(self):
        self.kg = Unit.objects.create(name="kg")
        self.box = Unit.objects.create(name="box")
        self.crate = Unit.objects.create(name="crate")
        self.rice = Product.objects.create(name="Rice", main_unit=self.kg)
        UnitConversion.objects.create(product=self.rice, unit=self.box, conversion_factor=Decimal("10"))

    def test_main_unit_always_has_factor_one(self):
        result = conversion_factor(self.rice, self.kg.id)
        self.assertTrue(result.resolved)
        self.assertEqual(result.value, Decimal("1"))

    def test_missing_conversion_is_tagged_not_raised(self):
        result = conversion_factor(self.rice, self.crate.id)
        self.assertFalse(result.resolved)
        self.assertIn("no conversion", result.reason)

    def test_lenient_lookup_falls_back_to_identity_with_warning(self):
        with self.assertLogs("apps.catalog.services", level="WARNING"):
            self.assertEqual(factor_or_identity(self.rice, self.crate.id), Decimal("1"))

    def test_box_quantity_in_main_units(self):
        factor = factor_or_identity(self.rice, self.box.id)
        self.assertEqual(to_main_quantity(Decimal("2"), factor), Decimal("20"))
        self.assertEqual(conversion_map(self.rice), {self.kg.id: Decimal("1"), self.box.id: Decimal("10")})

    def test_unit_lookup_by_name_ignores_case_and_whitespace(self):
        self.assertEqual(resolve_unit(name="  BOX "), self.box)
        self.assertFalse(resolve_unit_by_name("litre").resolved)
        with self.assertRaises(UnresolvedReference):
            resolve_unit(name="litre")

    def test_malformed_product_id_is_unresolved(self):
        with self.assertRaises(UnresolvedReference):
            get_product("not-a-uuid")

    def test_factor_direction_is_described_to_api_clients(self):
        fields = UnitConversionSerializer().fields
        self.assertIn("Main units held by one of this unit", fields["conversion_factor"].help_text)
        self.assertIn("main unit", fields["unit"].help_text)


class CatalogApiTests(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin", password="admin123", role="ADMIN")
        self.seller = User.objects.create_user(username="seller", password="seller123", role="SELLER")
        self.kg = Unit.objects.create(name="kg")
        self.box = Unit.objects.create(name="box")

    def auth_as(self, username, password):
        response = self.client.post("/api/v1/auth/token/", {"username": username, "password": password}, format="json")
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")

    def test_product_with_conversion(self):
        self.auth_as("admin", "admin123")
        created = self.client.post(
            "/api/v1/products/",
            {"sku": "RICE-1", "name": "Rice", "main_unit": str(self.kg.id), "low_stock_threshold": "10"},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        self.assertTrue(AuditLog.objects.filter(action="catalog.product.create", entity_id=created.data["id"]).exists())

        conversion = self.client.post(
            "/api/v1/unit-conversions/",
            {"product": created.data["id"], "unit": str(self.box.id), "conversion_factor": "10"},
            format="json",
        )
        self.assertEqual(conversion.status_code, 201)

        detail = self.client.get(f"/api/v1/products/{created.data['id']}/")
        self.assertEqual(detail.data["main_unit_name"], "kg")
        self.assertEqual(detail.data["conversions"][0]["unit_name"], "box")

    def test_conversion_rules(self):
        self.auth_as("admin", "admin123")
        product = Product.objects.create(name="Rice", main_unit=self.kg)

        zero = self.client.post(
            "/api/v1/unit-conversions/",
            {"product": str(product.id), "unit": str(self.box.id), "conversion_factor": "0"},
            format="json",
        )
        self.assertEqual(zero.status_code, 400)
        self.assertIn("conversion_factor", zero.data["fields"])

        main = self.client.post(
            "/api/v1/unit-conversions/",
            {"product": str(product.id), "unit": str(self.kg.id), "conversion_factor": "1"},
            format="json",
        )
        self.assertEqual(main.status_code, 400)
        self.assertIn("unit", main.data["fields"])

    def test_main_unit_cannot_be_cleared(self):
        self.auth_as("admin", "admin123")
        product = Product.objects.create(name="Rice", main_unit=self.kg)
        response = self.client.patch(f"/api/v1/products/{product.id}/", {"main_unit": None}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_seller_reads_but_cannot_write(self):
        self.auth_as("seller", "seller123")
        self.assertEqual(self.client.get("/api/v1/units/").status_code, 200)
        response = self.client.post("/api/v1/units/", {"name": "litre"}, format="json")
        self.assertEqual(response.status_code, 403)
