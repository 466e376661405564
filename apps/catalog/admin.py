from django.contrib import admin

from apps.catalog.models import Product, Unit, UnitConversion


class UnitConversionInline(admin.TabularInline):
    model = UnitConversion
    extra = 0
    autocomplete_fields = ("unit",)


@admin.register(Unit)
class UnitAdmin(admin.ModelAdmin):
    list_display = ("name", "suffix", "created_at")
    search_fields = ("name",)


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "sku", "main_unit", "low_stock_threshold", "is_active", "updated_at")
    list_filter = ("is_active", "main_unit")
    search_fields = ("name", "sku", "local_name")
    autocomplete_fields = ("main_unit",)
    inlines = [UnitConversionInline]


@admin.register(UnitConversion)
class UnitConversionAdmin(admin.ModelAdmin):
    list_display = ("product", "unit", "conversion_factor", "updated_at")
    search_fields = ("product__name", "unit__name")
    autocomplete_fields = ("product", "unit")
