import uuid

from django.core.exceptions import ValidationError
from django.db import models


def normalize_unit_name(value: str) -> str:
    return (value or "").strip()


class Unit(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=64, unique=True)
    suffix = models.CharField(max_length=16, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def save(self, *args, **kwargs):
        self.name = normalize_unit_name(self.name)
        self.suffix = (self.suffix or "").strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64, unique=True, null=True, blank=True)
    name = models.CharField(max_length=255, db_index=True)
    local_name = models.CharField(max_length=255, blank=True)
    main_unit = models.ForeignKey(
        Unit,
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="main_for_products",
    )
    low_stock_threshold = models.DecimalField(max_digits=14, decimal_places=3, default=5)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def save(self, *args, **kwargs):
        self.name = (self.name or "").strip()
        if not self.sku:
            self.sku = None
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name if not self.sku else f"{self.sku} - {self.name}"


class UnitConversion(models.Model):
    """How many main units of ``product`` one ``unit`` holds."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="conversions")
    unit = models.ForeignKey(
        Unit,
        on_delete=models.PROTECT,
        related_name="conversions",
        help_text="Any unit other than the product's main unit, which always converts with factor 1.",
    )
    conversion_factor = models.DecimalField(
        max_digits=18,
        decimal_places=6,
        help_text="Main units held by one of this unit, e.g. 10 for a box of 10 kg when kg is the main unit.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["product", "unit__name"]
        constraints = [
            models.UniqueConstraint(fields=["product", "unit"], name="unique_conversion_per_product_unit"),
            models.CheckConstraint(condition=models.Q(conversion_factor__gt=0), name="conversion_factor_gt_zero"),
        ]

    def clean(self):
        if self.conversion_factor is not None and self.conversion_factor <= 0:
            raise ValidationError({"conversion_factor": "conversion_factor must be greater than 0"})
        if self.product_id and self.unit_id and self.product.main_unit_id == self.unit_id:
            raise ValidationError({"unit": "the main unit always converts with factor 1"})

    def __str__(self):
        return f"{self.product.name}: 1 {self.unit.name} = {self.conversion_factor}"
