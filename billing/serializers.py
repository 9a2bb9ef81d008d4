from rest_framework import serializers

from billing.models import BottleLedgerEntry, MonthlyPayment, WalletTransaction


class WalletTransactionSerializer(serializers.ModelSerializer):
    customer = serializers.UUIDField(source="wallet.customer_id", read_only=True)

    class Meta:
        model = WalletTransaction
        fields = [
            "id",
            "customer",
            "kind",
            "amount",
            "balance_after",
            "description",
            "reference_type",
            "reference_id",
            "created_at",
        ]
        read_only_fields = fields


class BottleLedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = BottleLedgerEntry
        fields = [
            "id",
            "customer",
            "delivery",
            "action",
            "size",
            "quantity",
            "large_balance_after",
            "small_balance_after",
            "issued_date",
            "penalty_applied_at",
            "returned_at",
            "created_at",
        ]
        read_only_fields = fields


class MonthlyPaymentSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)

    class Meta:
        model = MonthlyPayment
        fields = [
            "id",
            "customer",
            "customer_name",
            "year",
            "month",
            "total_cost",
            "amount_due",
            "amount_paid",
            "status",
            "due_date",
            "paid_at",
        ]
        read_only_fields = fields


class MarkPaidSerializer(serializers.Serializer):
    amount_paid = serializers.IntegerField(min_value=0, required=False)


class WalletAdjustmentSerializer(serializers.Serializer):
    amount = serializers.IntegerField()
    description = serializers.CharField(required=False, allow_blank=True, max_length=200)

    def validate_amount(self, value):
        if value == 0:
            raise serializers.ValidationError("Amount must be non-zero.")
        return value


class ImposePenaltySerializer(serializers.Serializer):
    customer_id = serializers.UUIDField()
    fine_amount = serializers.IntegerField(min_value=0)
    large_count = serializers.IntegerField(min_value=0, default=0)
    small_count = serializers.IntegerField(min_value=0, default=0)
