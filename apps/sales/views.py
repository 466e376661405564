from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.common.permissions import RolePermission
from apps.sales.models import Payment, Sale
from apps.sales.serializers import PaymentCancelSerializer, PaymentSerializer, SaleCreateSerializer, SaleSerializer
from apps.sales.services import cancel_payment, create_sale


class SaleViewSet(viewsets.ModelViewSet):
    serializer_class = SaleSerializer
    permission_classes = [RolePermission]
    http_method_names = ["get", "post", "head", "options"]
    capability_map = {
        "list": ["sales.view"],
        "retrieve": ["sales.view"],
        "create": ["sales.create"],
    }

    def get_queryset(self):
        queryset = Sale.objects.select_related("created_by").prefetch_related("allocations")
        for param, lookup in (("maintains", "maintains_id"), ("product", "product_id"), ("customer", "customer_id")):
            value = self.request.query_params.get(param)
            if value:
                queryset = queryset.filter(**{lookup: value})
        sale_status = self.request.query_params.get("status")
        if sale_status:
            queryset = queryset.filter(status=sale_status.strip().upper())
        return queryset

    def get_serializer_class(self):
        if self.action == "create":
            return SaleCreateSerializer
        return SaleSerializer

    def create(self, request, *args, **kwargs):
        serializer = SaleCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = create_sale(actor=request.user, **serializer.to_request())
        return Response(
            {
                "sales": [str(sale.id) for sale in result.sales],
                "payment": PaymentSerializer(result.payment).data,
                "message": "Sale completed successfully.",
            },
            status=status.HTTP_201_CREATED,
        )


class PaymentViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = PaymentSerializer
    permission_classes = [RolePermission]
    capability_map = {
        "list": ["sales.view"],
        "retrieve": ["sales.view"],
        "cancel": ["sales.cancel"],
    }

    def get_queryset(self):
        queryset = Payment.objects.prefetch_related("sales")
        maintains_id = self.request.query_params.get("maintains")
        if maintains_id:
            queryset = queryset.filter(maintains_id=maintains_id)
        return queryset

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = PaymentCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = cancel_payment(payment_id=pk, actor=request.user, reason=serializer.validated_data["reason"])
        payment = self.get_queryset().get(pk=payment.pk)
        return Response(self.get_serializer(payment).data, status=status.HTTP_200_OK)
