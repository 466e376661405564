import json

from django.core.serializers.json import DjangoJSONEncoder

from apps.audit.models import AuditLog


def record_audit(*, actor, action, entity_type, entity_id, payload=None, maintains=None):
    """Append an audit row inside the caller's transaction.

    Decimal and UUID values in ``payload`` are stored as strings.
    """
    AuditLog.objects.create(
        actor=actor if getattr(actor, "is_authenticated", False) else None,
        maintains=maintains,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=json.loads(json.dumps(payload or {}, cls=DjangoJSONEncoder)),
    )
