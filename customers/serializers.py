from rest_framework import serializers

from billing.pricing import ALLOWED_QUANTITIES
from customers.models import Customer, DeliveryModification, Pause, Subscription


class SubscriptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = [
            "id",
            "daily_quantity",
            "daily_price",
            "large_bottles",
            "small_bottles",
            "delivery_count",
            "last_deposit_at_delivery_count",
            "status",
            "start_date",
        ]
        read_only_fields = fields


class CustomerSerializer(serializers.ModelSerializer):
    subscription = SubscriptionSerializer(read_only=True)
    delivery_person_username = serializers.CharField(source="delivery_person.username", read_only=True)

    class Meta:
        model = Customer
        fields = [
            "id",
            "name",
            "phone",
            "address",
            "delivery_person",
            "delivery_person_username",
            "status",
            "subscription",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "delivery_person", "status", "created_at", "updated_at"]


class PauseSerializer(serializers.ModelSerializer):
    class Meta:
        model = Pause
        fields = ["id", "pause_date", "created_at"]
        read_only_fields = fields


class PauseRequestSerializer(serializers.Serializer):
    dates = serializers.ListField(child=serializers.DateField(), allow_empty=False, max_length=62)


class SubscribeSerializer(serializers.Serializer):
    daily_quantity = serializers.ChoiceField(choices=ALLOWED_QUANTITIES)
    start_date = serializers.DateField(required=False)


class DeliveryModificationSerializer(serializers.ModelSerializer):
    quantity = serializers.ChoiceField(choices=ALLOWED_QUANTITIES)

    class Meta:
        model = DeliveryModification
        fields = ["id", "date", "quantity", "large_bottles", "small_bottles", "notes"]
        read_only_fields = ["id", "large_bottles", "small_bottles"]


class AssignDeliveryPersonSerializer(serializers.Serializer):
    delivery_person_id = serializers.UUIDField()
