from django.contrib import admin

from apps.customers.models import Customer, CustomerCategory, CustomerDue, CustomerDueUpdate


class CustomerDueUpdateInline(admin.TabularInline):
    model = CustomerDueUpdate
    extra = 0
    can_delete = False
    readonly_fields = ("total_amount", "paid_amount", "collected_amount", "note", "updated_by", "created_at")


@admin.register(CustomerCategory)
class CustomerCategoryAdmin(admin.ModelAdmin):
    list_display = ("name", "created_at")
    search_fields = ("name",)


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("name", "phone", "category", "created_at")
    list_filter = ("category",)
    search_fields = ("name", "phone", "phone_normalized")


@admin.register(CustomerDue)
class CustomerDueAdmin(admin.ModelAdmin):
    list_display = ("customer", "maintains", "total_amount", "paid_amount", "created_at")
    list_filter = ("maintains",)
    search_fields = ("customer__name", "customer__phone")
    autocomplete_fields = ("customer",)
    inlines = [CustomerDueUpdateInline]
