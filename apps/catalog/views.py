from django.db.models import Q
from rest_framework import viewsets

from apps.audit.services import record_audit
from apps.catalog.models import Product, Unit, UnitConversion
from apps.catalog.serializers import ProductSerializer, UnitConversionSerializer, UnitSerializer
from apps.common.permissions import RolePermission

CATALOG_CAPABILITIES = {
    "list": ["catalog.view"],
    "retrieve": ["catalog.view"],
    "create": ["catalog.manage"],
    "partial_update": ["catalog.manage"],
    "update": ["catalog.manage"],
    "destroy": ["catalog.manage"],
}


class UnitViewSet(viewsets.ModelViewSet):
    queryset = Unit.objects.all()
    serializer_class = UnitSerializer
    permission_classes = [RolePermission]
    # Units are immutable once referenced; renames go through a new unit.
    http_method_names = ["get", "post", "delete", "head", "options"]
    capability_map = CATALOG_CAPABILITIES


class ProductViewSet(viewsets.ModelViewSet):
    serializer_class = ProductSerializer
    permission_classes = [RolePermission]
    capability_map = CATALOG_CAPABILITIES

    def get_queryset(self):
        queryset = Product.objects.select_related("main_unit").prefetch_related("conversions__unit")
        query = self.request.query_params.get("q")
        if query:
            queryset = queryset.filter(Q(name__icontains=query) | Q(sku__icontains=query) | Q(local_name__icontains=query))

        is_active = self.request.query_params.get("is_active")
        if is_active is not None:
            normalized = is_active.strip().lower()
            if normalized in {"1", "true", "yes"}:
                queryset = queryset.filter(is_active=True)
            elif normalized in {"0", "false", "no"}:
                queryset = queryset.filter(is_active=False)
        return queryset

    def perform_create(self, serializer):
        product = serializer.save()
        record_audit(
            actor=self.request.user,
            action="catalog.product.create",
            entity_type="product",
            entity_id=product.id,
            payload={
                "name": product.name,
                "main_unit_id": str(product.main_unit_id) if product.main_unit_id else None,
                "low_stock_threshold": str(product.low_stock_threshold),
            },
        )

    def perform_update(self, serializer):
        old_main_unit_id = serializer.instance.main_unit_id
        product = serializer.save()
        record_audit(
            actor=self.request.user,
            action="catalog.product.update",
            entity_type="product",
            entity_id=product.id,
            payload={
                "main_unit_before": str(old_main_unit_id) if old_main_unit_id else None,
                "main_unit_after": str(product.main_unit_id) if product.main_unit_id else None,
                "is_active": product.is_active,
            },
        )


class UnitConversionViewSet(viewsets.ModelViewSet):
    serializer_class = UnitConversionSerializer
    permission_classes = [RolePermission]
    capability_map = CATALOG_CAPABILITIES

    def get_queryset(self):
        queryset = UnitConversion.objects.select_related("product", "unit")
        product_id = self.request.query_params.get("product")
        if product_id:
            queryset = queryset.filter(product_id=product_id)
        return queryset

    def perform_update(self, serializer):
        old_factor = serializer.instance.conversion_factor
        conversion = serializer.save()
        record_audit(
            actor=self.request.user,
            action="catalog.conversion.update",
            entity_type="unit_conversion",
            entity_id=conversion.id,
            payload={"before": str(old_factor), "after": str(conversion.conversion_factor)},
        )
