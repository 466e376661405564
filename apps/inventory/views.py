from rest_framework import generics, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.catalog.services import get_product, main_unit_of, resolve_unit
from apps.common.exceptions import LedgerValidationError, UnresolvedReference
from apps.common.permissions import RolePermission
from apps.inventory.allocation import allocate
from apps.inventory.models import StockBatch
from apps.inventory.serializers import (
    AllocationPreviewSerializer,
    BatchIntakeSerializer,
    BatchPricesSerializer,
    RestockSerializer,
    StockBatchSerializer,
    StockRowSerializer,
    TrackUnitSerializer,
)
from apps.inventory.services import (
    add_stock_to_latest_batch,
    create_batch,
    list_rows_for_batch,
    stock_summary,
    track_unit,
    update_batch_prices,
)
from apps.maintains.models import Maintains


def _get_maintains(maintains_id):
    maintains = Maintains.objects.filter(pk=maintains_id).first()
    if maintains is None:
        raise UnresolvedReference("Location not found.", maintains_id=maintains_id)
    return maintains


def _prices(entries):
    return [{"unit_id": entry["unit_id"], "price": entry["price"]} for entry in entries]


class StockBatchViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = StockBatchSerializer
    permission_classes = [RolePermission]
    capability_map = {
        "list": ["inventory.view"],
        "retrieve": ["inventory.view"],
        "create": ["inventory.manage"],
        "restock": ["inventory.manage"],
        "prices": ["inventory.manage"],
        "track_unit": ["inventory.manage"],
    }

    def get_queryset(self):
        queryset = StockBatch.objects.select_related("product", "maintains").prefetch_related("rows__unit")
        product_id = self.request.query_params.get("product")
        if product_id:
            queryset = queryset.filter(product_id=product_id)
        maintains_id = self.request.query_params.get("maintains")
        if maintains_id:
            queryset = queryset.filter(maintains_id=maintains_id)
        include_deleted = (self.request.query_params.get("include_deleted") or "").strip().lower()
        if include_deleted not in {"1", "true", "yes"}:
            queryset = queryset.active()
        return queryset

    def _batch_response(self, batch, status_code=status.HTTP_200_OK):
        batch = StockBatch.objects.select_related("product", "maintains").prefetch_related("rows__unit").get(pk=batch.pk)
        return Response(StockBatchSerializer(batch).data, status=status_code)

    def create(self, request, *args, **kwargs):
        serializer = BatchIntakeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        batch = create_batch(
            product=get_product(data["product_id"]),
            maintains=_get_maintains(data["maintains_id"]),
            main_quantity=data["quantity"],
            unit_prices=_prices(data["unit_prices"]),
            batch_number=data["batch_number"],
            production_date=data["production_date"],
            actor=request.user,
        )
        return self._batch_response(batch, status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"])
    def restock(self, request):
        serializer = RestockSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        batch = add_stock_to_latest_batch(
            product=get_product(data["product_id"]),
            maintains=_get_maintains(data["maintains_id"]),
            main_quantity=data["quantity"],
            unit_prices=_prices(data["unit_prices"]),
            actor=request.user,
        )
        return self._batch_response(batch)

    @action(detail=True, methods=["post"])
    def prices(self, request, pk=None):
        batch = self.get_object()
        serializer = BatchPricesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        rows = update_batch_prices(
            batch=batch,
            unit_prices=_prices(serializer.validated_data["unit_prices"]),
            actor=request.user,
        )
        return Response(StockRowSerializer(rows, many=True).data)

    @action(detail=True, methods=["post"], url_path="track-unit")
    def track_unit(self, request, pk=None):
        batch = self.get_object()
        serializer = TrackUnitSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        row = track_unit(
            batch=batch,
            unit=resolve_unit(unit_id=serializer.validated_data["unit_id"]),
            price=serializer.validated_data["price"],
            actor=request.user,
        )
        return Response(StockRowSerializer(row).data, status=status.HTTP_201_CREATED)


class AllocationPreviewView(generics.GenericAPIView):
    """Read-only FIFO plan for a prospective sale line."""

    permission_classes = [RolePermission]
    capability_map = {"post": ["inventory.view"]}
    serializer_class = AllocationPreviewSerializer

    def post(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        product = get_product(data["product_id"])
        unit = resolve_unit(unit_id=data["unit_id"], name=data["unit"])
        plan = allocate(
            product.id,
            data["maintains_id"],
            unit.id,
            data["quantity"],
            batch_id=data["stock_batch_id"],
        )
        return Response(
            {
                "product_id": str(product.id),
                "unit_id": str(unit.id),
                "quantity": str(data["quantity"]),
                "allocations": [{"batch_id": entry.batch_id, "quantity": str(entry.quantity)} for entry in plan],
            }
        )


class StockSummaryView(generics.GenericAPIView):
    permission_classes = [RolePermission]
    capability_map = {"get": ["inventory.view"]}

    def get(self, request, *args, **kwargs):
        product_id = request.query_params.get("product")
        if not product_id:
            raise LedgerValidationError("The product query parameter is required.", field="product")
        product = get_product(product_id)
        maintains_id = request.query_params.get("maintains")
        maintains = _get_maintains(maintains_id) if maintains_id else None
        main_unit = main_unit_of(product)
        summary = stock_summary(product, maintains)
        total = sum((quantity for _, quantity in summary), 0)
        return Response(
            {
                "product_id": str(product.id),
                "main_unit_id": str(main_unit.id),
                "total_main_quantity": str(total),
                "low_stock": total <= product.low_stock_threshold,
                "batches": [
                    {
                        "batch_id": batch.id,
                        "batch_number": batch.batch_number,
                        "maintains_id": str(batch.maintains_id),
                        "main_quantity": str(quantity),
                        "rows": StockRowSerializer(list_rows_for_batch(batch), many=True).data,
                    }
                    for batch, quantity in summary
                ],
            }
        )
