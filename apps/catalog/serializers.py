from rest_framework import serializers

from apps.catalog.models import Product, Unit, UnitConversion


class UnitSerializer(serializers.ModelSerializer):
    class Meta:
        model = Unit
        fields = ["id", "name", "suffix", "created_at"]
        read_only_fields = ["id", "created_at"]


class UnitConversionSerializer(serializers.ModelSerializer):
    unit_name = serializers.CharField(source="unit.name", read_only=True)

    class Meta:
        model = UnitConversion
        fields = ["id", "product", "unit", "unit_name", "conversion_factor", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate(self, attrs):
        product = attrs.get("product") or getattr(self.instance, "product", None)
        unit = attrs.get("unit") or getattr(self.instance, "unit", None)
        factor = attrs.get("conversion_factor", getattr(self.instance, "conversion_factor", None))
        if factor is not None and factor <= 0:
            raise serializers.ValidationError({"conversion_factor": "conversion_factor must be greater than 0."})
        if product and unit and product.main_unit_id == unit.id:
            raise serializers.ValidationError({"unit": "The main unit always converts with factor 1."})
        return attrs


class ProductSerializer(serializers.ModelSerializer):
    main_unit_name = serializers.CharField(source="main_unit.name", read_only=True)
    conversions = UnitConversionSerializer(many=True, read_only=True)

    class Meta:
        model = Product
        fields = [
            "id",
            "sku",
            "name",
            "local_name",
            "main_unit",
            "main_unit_name",
            "low_stock_threshold",
            "is_active",
            "conversions",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "main_unit_name", "conversions", "created_at", "updated_at"]

    def validate_main_unit(self, value):
        if self.instance and self.instance.main_unit_id and value is None:
            raise serializers.ValidationError("The main unit cannot be removed once set.")
        return value

    def validate_low_stock_threshold(self, value):
        if value < 0:
            raise serializers.ValidationError("low_stock_threshold must be 0 or greater.")
        return value
