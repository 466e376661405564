from django.contrib import admin

from apps.sales.models import Payment, PaymentSale, Sale, SaleAllocation


class SaleAllocationInline(admin.TabularInline):
    model = SaleAllocation
    extra = 0
    can_delete = False
    readonly_fields = ("batch", "unit", "quantity", "position")


class PaymentSaleInline(admin.TabularInline):
    model = PaymentSale
    extra = 0
    can_delete = False
    readonly_fields = ("sale",)


@admin.register(Sale)
class SaleAdmin(admin.ModelAdmin):
    list_display = ("id", "product_name", "unit_name", "sale_quantity", "sale_amount", "status", "maintains", "created_at")
    list_filter = ("status", "maintains", "discount_type")
    search_fields = ("id", "product_name", "customer__name", "customer__phone", "created_by__username")
    readonly_fields = ("quantity_in_main_unit", "main_unit_price", "canceled_at")
    inlines = [SaleAllocationInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("id", "maintains", "total_amount", "status", "customer_due", "created_by", "created_at")
    list_filter = ("status", "maintains")
    search_fields = ("id", "created_by__username")
    readonly_fields = ("payments", "canceled_at", "canceled_by")
    inlines = [PaymentSaleInline]
