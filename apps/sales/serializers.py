from rest_framework import serializers

from apps.common.decimals import ZERO
from apps.sales.models import DiscountType, Payment, PaymentMethod, Sale, SaleAllocation
from apps.sales.services import PaymentInput, SaleLineInput


class SaleLineRequestSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    product_name = serializers.CharField(required=False, allow_blank=True, default="")
    unit = serializers.CharField(required=False, allow_blank=True, default="")
    unit_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    price_per_quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    stock_batch_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    stock_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, default=ZERO)
    discount_type = serializers.ChoiceField(choices=DiscountType.choices, required=False, default=DiscountType.FIXED)
    discount_note = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["quantity"] <= 0:
            raise serializers.ValidationError({"quantity": "Quantity must be greater than 0."})
        if attrs["price_per_quantity"] < 0:
            raise serializers.ValidationError({"price_per_quantity": "Price cannot be negative."})
        if attrs["discount"] < 0:
            raise serializers.ValidationError({"discount": "Discount cannot be negative."})
        if not (attrs.get("unit_id") or attrs.get("unit") or attrs.get("stock_id")):
            raise serializers.ValidationError({"unit": "A unit or unit_id is required."})
        return attrs

    def to_line(self, attrs):
        return SaleLineInput(
            product_id=attrs["product_id"],
            product_name=attrs["product_name"],
            unit_id=attrs["unit_id"],
            unit_name=attrs["unit"],
            quantity=attrs["quantity"],
            price_per_quantity=attrs["price_per_quantity"],
            discount=attrs["discount"] or ZERO,
            discount_type=attrs["discount_type"],
            discount_note=attrs["discount_note"],
            stock_batch_id=attrs["stock_batch_id"],
            stock_id=attrs["stock_id"],
        )


class PaymentEntrySerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=PaymentMethod.choices)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class SaleCreateSerializer(serializers.Serializer):
    maintains_id = serializers.UUIDField()
    customer_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    customer_category_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    total_price_with_discount = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        required=False,
        allow_null=True,
        default=None,
    )
    products = SaleLineRequestSerializer(many=True, allow_empty=False)
    payment_info = PaymentEntrySerializer(many=True, allow_empty=False)

    def validate(self, attrs):
        due_total = sum(
            (entry["amount"] for entry in attrs["payment_info"] if entry["method"] == PaymentMethod.DUE),
            ZERO,
        )
        if due_total > 0 and not attrs.get("customer_id"):
            raise serializers.ValidationError({"customer_id": "A customer is required for due payments."})
        return attrs

    def to_request(self):
        data = self.validated_data
        line_serializer = SaleLineRequestSerializer()
        return {
            "lines": [line_serializer.to_line(line) for line in data["products"]],
            "payments": [PaymentInput(method=entry["method"], amount=entry["amount"]) for entry in data["payment_info"]],
            "maintains_id": data["maintains_id"],
            "customer_id": data["customer_id"],
            "customer_category_id": data["customer_category_id"],
            "total_with_discount": data["total_price_with_discount"],
        }


class SaleAllocationSerializer(serializers.ModelSerializer):
    class Meta:
        model = SaleAllocation
        fields = ["batch", "unit", "quantity", "position"]
        read_only_fields = fields


class SaleSerializer(serializers.ModelSerializer):
    allocations = SaleAllocationSerializer(many=True, read_only=True)
    created_by_username = serializers.CharField(source="created_by.username", read_only=True)

    class Meta:
        model = Sale
        fields = [
            "id",
            "product",
            "product_name",
            "batch",
            "unit",
            "unit_name",
            "sale_quantity",
            "price_per_unit",
            "discount_type",
            "discount_amount",
            "discount_note",
            "sale_amount",
            "quantity_in_main_unit",
            "main_unit_price",
            "status",
            "maintains",
            "customer",
            "customer_category",
            "created_by",
            "created_by_username",
            "created_at",
            "canceled_at",
            "allocations",
        ]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    sales = serializers.PrimaryKeyRelatedField(many=True, read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "maintains",
            "payments",
            "total_amount",
            "customer_due",
            "sales",
            "status",
            "created_by",
            "created_at",
            "canceled_at",
            "canceled_by",
            "cancel_reason",
        ]
        read_only_fields = fields


class PaymentCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
