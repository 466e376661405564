from django.core.management.base import BaseCommand

from apps.inventory.cleanup import CleanupScope, run_cleanup
from apps.inventory.models import StockBatch


class Command(BaseCommand):
    help = "Soft-delete exhausted stock batches once per product and location."

    def add_arguments(self, parser):
        parser.add_argument("--product", help="Only clean batches of this product id.")
        parser.add_argument("--maintains", help="Only clean batches of this location id.")

    def handle(self, *args, **options):
        queryset = StockBatch.objects.active()
        if options.get("product"):
            queryset = queryset.filter(product_id=options["product"])
        if options.get("maintains"):
            queryset = queryset.filter(maintains_id=options["maintains"])

        retired_count = 0
        scopes = queryset.values_list("product_id", "maintains_id").distinct().order_by("product_id", "maintains_id")
        for product_id, maintains_id in scopes:
            retired_count += len(run_cleanup(CleanupScope(product_id, maintains_id)))

        self.stdout.write(self.style.SUCCESS(f"Retired batches: {retired_count}"))
