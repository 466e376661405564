import re
import uuid

from django.core.exceptions import ValidationError
from django.db import models

from apps.common.decimals import round_money


def normalize_phone(value):
    raw = str(value or "").strip()
    normalized = re.sub(r"\D+", "", raw)
    return normalized or raw


class CustomerCategory(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=80, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "customer categories"

    def save(self, *args, **kwargs):
        self.name = (self.name or "").strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=50)
    phone_normalized = models.CharField(max_length=50, unique=True)
    category = models.ForeignKey(
        CustomerCategory,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="customers",
    )
    notes = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["name"], name="customer_name_idx"),
        ]

    def clean(self):
        if not self.phone:
            raise ValidationError("phone is required")
        if not normalize_phone(self.phone):
            raise ValidationError("phone must contain at least one digit")

    def save(self, *args, **kwargs):
        self.phone = str(self.phone or "").strip()
        self.name = str(self.name or "").strip()
        self.phone_normalized = normalize_phone(self.phone)
        self.full_clean()
        super().save(*args, **kwargs)

    @classmethod
    def get_or_create_by_phone(cls, phone, name="", category=None):
        customer = cls.objects.filter(phone_normalized=normalize_phone(phone)).first()
        if customer:
            if name and customer.name != str(name).strip():
                customer.name = str(name).strip()
                customer.save(update_fields=["name", "phone", "phone_normalized", "updated_at"])
            return customer
        return cls.objects.create(phone=str(phone).strip(), name=str(name).strip(), category=category)

    def __str__(self):
        return f"{self.name} ({self.phone})"


class CustomerDue(models.Model):
    """Money a customer owes at one location, created by a sale paid partly on credit."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="dues")
    maintains = models.ForeignKey("maintains.Maintains", on_delete=models.PROTECT, related_name="customer_dues")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_by = models.ForeignKey("accounts.User", on_delete=models.PROTECT, related_name="customer_dues")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["customer", "created_at"], name="due_customer_created_idx"),
            models.Index(fields=["maintains", "created_at"], name="due_maintains_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(total_amount__gte=0), name="due_total_gte_zero"),
            models.CheckConstraint(condition=models.Q(paid_amount__gte=0), name="due_paid_gte_zero"),
            models.CheckConstraint(
                condition=models.Q(paid_amount__lte=models.F("total_amount")),
                name="due_paid_lte_total",
            ),
        ]

    @property
    def balance(self):
        return round_money(self.total_amount - self.paid_amount)


class CustomerDueUpdate(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    due = models.ForeignKey(CustomerDue, on_delete=models.CASCADE, related_name="updates")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2)
    collected_amount = models.DecimalField(max_digits=12, decimal_places=2)
    note = models.CharField(max_length=255, blank=True)
    updated_by = models.ForeignKey("accounts.User", on_delete=models.PROTECT, related_name="customer_due_updates")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
