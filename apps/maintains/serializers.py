from rest_framework import serializers

from apps.maintains.models import Maintains


class MaintainsSerializer(serializers.ModelSerializer):
    class Meta:
        model = Maintains
        fields = ["id", "name", "kind", "address", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]
