from rest_framework import serializers

from apps.inventory.models import Stock, StockBatch


class StockRowSerializer(serializers.ModelSerializer):
    unit_name = serializers.CharField(source="unit.name", read_only=True)

    class Meta:
        model = Stock
        fields = ["id", "batch", "unit", "unit_name", "quantity", "price_per_quantity", "updated_at"]
        read_only_fields = fields


class StockBatchSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    maintains_name = serializers.CharField(source="maintains.name", read_only=True)
    rows = StockRowSerializer(many=True, read_only=True)

    class Meta:
        model = StockBatch
        fields = [
            "id",
            "product",
            "product_name",
            "maintains",
            "maintains_name",
            "batch_number",
            "production_date",
            "is_deleted",
            "deleted_at",
            "created_by",
            "created_at",
            "updated_at",
            "rows",
        ]
        read_only_fields = fields


class UnitPriceSerializer(serializers.Serializer):
    unit_id = serializers.UUIDField()
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class BatchIntakeSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    maintains_id = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3, min_value=0)
    unit_prices = UnitPriceSerializer(many=True, allow_empty=False)
    batch_number = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    production_date = serializers.DateField(required=False, allow_null=True, default=None)

    def validate_unit_prices(self, value):
        unit_ids = [entry["unit_id"] for entry in value]
        if len(unit_ids) != len(set(unit_ids)):
            raise serializers.ValidationError("Each unit can only be priced once.")
        return value


class RestockSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    maintains_id = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    unit_prices = UnitPriceSerializer(many=True, required=False, default=list)

    def validate_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("Quantity must be greater than 0.")
        return value


class BatchPricesSerializer(serializers.Serializer):
    unit_prices = UnitPriceSerializer(many=True, allow_empty=False)


class TrackUnitSerializer(serializers.Serializer):
    unit_id = serializers.UUIDField()
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class AllocationPreviewSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    maintains_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    unit_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    unit = serializers.CharField(required=False, allow_blank=True, default="")
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    stock_batch_id = serializers.IntegerField(required=False, allow_null=True, default=None)

    def validate(self, attrs):
        if attrs["quantity"] <= 0:
            raise serializers.ValidationError({"quantity": "Quantity must be greater than 0."})
        if not attrs.get("unit_id") and not attrs.get("unit"):
            raise serializers.ValidationError({"unit": "A unit or unit_id is required."})
        return attrs
