from django.db.models import Q
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.common.permissions import RolePermission
from apps.customers.models import Customer, CustomerCategory, CustomerDue
from apps.customers.serializers import (
    CustomerCategorySerializer,
    CustomerDueSerializer,
    CustomerSerializer,
    DueCollectionSerializer,
)
from apps.customers.services import collect_due


class CustomerCategoryViewSet(viewsets.ModelViewSet):
    queryset = CustomerCategory.objects.all()
    serializer_class = CustomerCategorySerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "head", "options"]
    capability_map = {
        "list": ["customers.view"],
        "retrieve": ["customers.view"],
        "create": ["customers.manage"],
    }


class CustomerViewSet(viewsets.ModelViewSet):
    serializer_class = CustomerSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "patch", "head", "options"]
    capability_map = {
        "list": ["customers.view"],
        "retrieve": ["customers.view"],
        "create": ["customers.manage"],
        "partial_update": ["customers.manage"],
    }

    def get_queryset(self):
        queryset = Customer.objects.select_related("category")
        query = self.request.query_params.get("q")
        if query:
            queryset = queryset.filter(Q(name__icontains=query) | Q(phone_normalized__icontains=query))
        return queryset


class CustomerDueViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = CustomerDueSerializer
    permission_classes = [RolePermission]
    capability_map = {
        "list": ["customers.view"],
        "retrieve": ["customers.view"],
        "collect": ["dues.collect"],
    }

    def get_queryset(self):
        queryset = CustomerDue.objects.select_related("customer").prefetch_related("updates__updated_by")
        customer_id = self.request.query_params.get("customer")
        if customer_id:
            queryset = queryset.filter(customer_id=customer_id)
        maintains_id = self.request.query_params.get("maintains")
        if maintains_id:
            queryset = queryset.filter(maintains_id=maintains_id)
        return queryset

    @action(detail=True, methods=["post"])
    def collect(self, request, pk=None):
        due = self.get_object()
        serializer = DueCollectionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        collect_due(
            due_id=due.id,
            amount=serializer.validated_data["amount"],
            actor=request.user,
            note=serializer.validated_data["note"],
        )
        return Response(self.get_serializer(self.get_queryset().get(pk=due.pk)).data, status=200)
