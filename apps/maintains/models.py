import uuid

from django.db import models


class MaintainsKind(models.TextChoices):
    OUTLET = "OUTLET", "Outlet"
    PRODUCTION = "PRODUCTION", "Production house"


class Maintains(models.Model):
    """A location that holds stock and records sales: an outlet or a production house."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120, unique=True)
    kind = models.CharField(max_length=16, choices=MaintainsKind.choices, default=MaintainsKind.OUTLET)
    address = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "maintains"

    def save(self, *args, **kwargs):
        self.name = (self.name or "").strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name
