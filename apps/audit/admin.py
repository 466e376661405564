from django.contrib import admin

from apps.audit.models import AuditLog


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "entity_type", "entity_id", "actor", "maintains", "created_at")
    list_filter = ("action", "entity_type", "maintains")
    search_fields = ("entity_id", "action", "actor__username")
    readonly_fields = ("actor", "maintains", "action", "entity_type", "entity_id", "payload", "created_at")
