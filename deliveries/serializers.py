from rest_framework import serializers

from deliveries.models import Delivery
from deliveries.settlement import OUTCOMES


class DeliverySerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    customer_address = serializers.CharField(source="customer.address", read_only=True)
    customer_status = serializers.CharField(source="customer.status", read_only=True)

    class Meta:
        model = Delivery
        fields = [
            "id",
            "customer",
            "customer_name",
            "customer_address",
            "customer_status",
            "delivery_person",
            "delivery_date",
            "quantity",
            "large_bottles",
            "small_bottles",
            "charge",
            "deposit",
            "large_bottles_collected",
            "small_bottles_collected",
            "status",
            "notes",
            "delivered_at",
        ]
        read_only_fields = fields


class BottlesCollectedSerializer(serializers.Serializer):
    large = serializers.IntegerField(min_value=0, default=0)
    small = serializers.IntegerField(min_value=0, default=0)


class MarkDeliverySerializer(serializers.Serializer):
    outcome = serializers.ChoiceField(choices=[(value, value) for value in OUTCOMES])
    bottles_collected = BottlesCollectedSerializer(required=False)
    notes = serializers.CharField(required=False, allow_blank=True, max_length=200)
