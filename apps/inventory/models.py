from django.core.exceptions import ValidationError
from django.db import models


class StockBatchQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_deleted=False)

    def for_scope(self, product_id, maintains_id=None):
        queryset = self.filter(product_id=product_id)
        if maintains_id is not None:
            queryset = queryset.filter(maintains_id=maintains_id)
        return queryset

    def oldest_first(self):
        return self.order_by("created_at", "id")

    def locked(self):
        # Sale and allocation inserts take KEY SHARE on the batch they reference.
        return self.select_for_update(no_key=True, of=("self",))


class StockBatch(models.Model):
    """One receipt or production lot of a product at a location.

    The auto-increment ``id`` records insertion order and breaks ties between
    batches created within the same timestamp.
    """

    product = models.ForeignKey("catalog.Product", on_delete=models.PROTECT, related_name="batches")
    maintains = models.ForeignKey("maintains.Maintains", on_delete=models.PROTECT, related_name="batches")
    batch_number = models.CharField(max_length=64, blank=True)
    production_date = models.DateField(null=True, blank=True)
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        "accounts.User",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="stock_batches",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = StockBatchQuerySet.as_manager()

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["product", "maintains", "is_deleted"], name="batch_scope_active_idx"),
            models.Index(fields=["created_at"], name="batch_created_idx"),
        ]

    def __str__(self):
        return f"{self.batch_number or self.pk} ({self.product_id})"


class Stock(models.Model):
    """Quantity and price of one unit inside one batch."""

    batch = models.ForeignKey(StockBatch, on_delete=models.CASCADE, related_name="rows")
    unit = models.ForeignKey("catalog.Unit", on_delete=models.PROTECT, related_name="stock_rows")
    quantity = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    price_per_quantity = models.DecimalField(max_digits=12, decimal_places=2)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["batch_id", "unit_id"]
        constraints = [
            models.UniqueConstraint(fields=["batch", "unit"], name="unique_stock_row_per_batch_unit"),
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name="stock_quantity_gte_zero"),
            models.CheckConstraint(condition=models.Q(price_per_quantity__gte=0), name="stock_price_gte_zero"),
        ]

    def clean(self):
        if self.quantity is not None and self.quantity < 0:
            raise ValidationError({"quantity": "quantity cannot be negative"})
        if self.price_per_quantity is not None and self.price_per_quantity < 0:
            raise ValidationError({"price_per_quantity": "price_per_quantity cannot be negative"})

    def __str__(self):
        return f"batch {self.batch_id} / {self.unit_id}: {self.quantity}"
