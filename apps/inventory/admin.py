from django.contrib import admin

from apps.inventory.models import Stock, StockBatch


class StockInline(admin.TabularInline):
    model = Stock
    extra = 0
    readonly_fields = ("updated_at",)


@admin.register(StockBatch)
class StockBatchAdmin(admin.ModelAdmin):
    list_display = ("id", "product", "maintains", "batch_number", "is_deleted", "created_at")
    list_filter = ("is_deleted", "maintains")
    search_fields = ("batch_number", "product__name", "product__sku")
    inlines = [StockInline]
