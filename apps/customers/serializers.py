from rest_framework import serializers

from apps.customers.models import Customer, CustomerCategory, CustomerDue, CustomerDueUpdate, normalize_phone


class CustomerCategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = CustomerCategory
        fields = ["id", "name", "created_at"]
        read_only_fields = ["id", "created_at"]


class CustomerSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True)

    class Meta:
        model = Customer
        fields = ["id", "name", "phone", "category", "category_name", "notes", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_phone(self, value):
        normalized = normalize_phone(value)
        if not normalized:
            raise serializers.ValidationError("phone must contain at least one digit.")
        duplicates = Customer.objects.filter(phone_normalized=normalized)
        if self.instance is not None:
            duplicates = duplicates.exclude(pk=self.instance.pk)
        if duplicates.exists():
            raise serializers.ValidationError("A customer with this phone already exists.")
        return value


class CustomerDueUpdateSerializer(serializers.ModelSerializer):
    updated_by_username = serializers.CharField(source="updated_by.username", read_only=True)

    class Meta:
        model = CustomerDueUpdate
        fields = [
            "id",
            "total_amount",
            "paid_amount",
            "collected_amount",
            "note",
            "updated_by",
            "updated_by_username",
            "created_at",
        ]
        read_only_fields = fields


class CustomerDueSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    balance = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    updates = CustomerDueUpdateSerializer(many=True, read_only=True)

    class Meta:
        model = CustomerDue
        fields = [
            "id",
            "customer",
            "customer_name",
            "maintains",
            "total_amount",
            "paid_amount",
            "balance",
            "created_by",
            "created_at",
            "updated_at",
            "updates",
        ]
        read_only_fields = fields


class DueCollectionSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
