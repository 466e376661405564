from rest_framework import viewsets

from apps.common.permissions import RolePermission
from apps.maintains.models import Maintains
from apps.maintains.serializers import MaintainsSerializer


class MaintainsViewSet(viewsets.ModelViewSet):
    queryset = Maintains.objects.all()
    serializer_class = MaintainsSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "patch", "head", "options"]
    capability_map = {
        "list": ["maintains.view"],
        "retrieve": ["maintains.view"],
        "create": ["maintains.manage"],
        "partial_update": ["maintains.manage"],
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        kind = self.request.query_params.get("kind")
        if kind:
            queryset = queryset.filter(kind=kind.strip().upper())
        return queryset
