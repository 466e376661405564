import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Unit",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=64, unique=True)),
                ("suffix", models.CharField(blank=True, max_length=16)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sku", models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ("name", models.CharField(db_index=True, max_length=255)),
                ("local_name", models.CharField(blank=True, max_length=255)),
                ("low_stock_threshold", models.DecimalField(decimal_places=3, default=5, max_digits=14)),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "main_unit",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="main_for_products",
                        to="catalog.unit",
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="UnitConversion",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "conversion_factor",
                    models.DecimalField(
                        decimal_places=6,
                        help_text="Main units held by one of this unit, e.g. 10 for a box of 10 kg when kg is the main unit.",
                        max_digits=18,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="conversions",
                        to="catalog.product",
                    ),
                ),
                (
                    "unit",
                    models.ForeignKey(
                        help_text="Any unit other than the product's main unit, which always converts with factor 1.",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="conversions",
                        to="catalog.unit",
                    ),
                ),
            ],
            options={
                "ordering": ["product", "unit__name"],
                "constraints": [
                    models.UniqueConstraint(fields=("product", "unit"), name="unique_conversion_per_product_unit"),
                    models.CheckConstraint(condition=models.Q(conversion_factor__gt=0), name="conversion_factor_gt_zero"),
                ],
            },
        ),
    ]
