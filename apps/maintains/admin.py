from django.contrib import admin

from apps.maintains.models import Maintains


@admin.register(Maintains)
class MaintainsAdmin(admin.ModelAdmin):
    list_display = ("name", "kind", "is_active", "created_at")
    list_filter = ("kind", "is_active")
    search_fields = ("name", "address")
