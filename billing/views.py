import logging

from django.shortcuts import get_object_or_404
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.ledger import current_balance, wallet_balance
from billing.models import BottleLedgerEntry, MonthlyPayment, WalletTransaction
from billing.monthly import mark_monthly_payment_paid
from billing.payments import apply_admin_adjustment
from billing.penalties import flagged_customers, impose_penalty
from billing.serializers import (
    BottleLedgerEntrySerializer,
    ImposePenaltySerializer,
    MarkPaidSerializer,
    MonthlyPaymentSerializer,
    WalletAdjustmentSerializer,
    WalletTransactionSerializer,
)
from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, scope_customers_for_user
from customers.models import Customer

logger = logging.getLogger(__name__)


class WalletTransactionViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = WalletTransaction.objects.select_related("wallet")
    serializer_class = WalletTransactionSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = scope_customers_for_user(self.queryset, self.request.user, prefix="wallet__customer__")
        customer_id = self.request.query_params.get("customer")
        if customer_id:
            qs = qs.filter(wallet__customer_id=customer_id)
        return qs.order_by("-id")


class BottleLedgerViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = BottleLedgerEntry.objects.all()
    serializer_class = BottleLedgerEntrySerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = scope_customers_for_user(self.queryset, self.request.user, prefix="customer__")
        customer_id = self.request.query_params.get("customer")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        return qs.order_by("-id")


class AdminWalletView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "wallet.adjust", "post": "wallet.adjust"}

    def get(self, request, customer_id):
        customer = get_object_or_404(Customer, pk=customer_id)
        return Response(
            {
                "customer_id": str(customer.id),
                "balance": wallet_balance(customer.id),
                "negative_balance_since": customer.wallet.negative_balance_since,
                "bottles": current_balance(customer.id).as_dict(),
            }
        )

    def post(self, request, customer_id):
        customer = get_object_or_404(Customer, pk=customer_id)
        serializer = WalletAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before = {"balance": wallet_balance(customer.id), "status": customer.status}
        result = apply_admin_adjustment(
            customer.id,
            serializer.validated_data["amount"],
            description=serializer.validated_data.get("description", ""),
            performed_by=request.user,
        )
        create_audit_log_from_request(
            request,
            action="wallet.adjust",
            entity="customer",
            entity_id=customer.id,
            before_snapshot=before,
            after_snapshot=result.as_dict(),
        )
        return Response(result.as_dict(), status=status.HTTP_201_CREATED)


class PenaltyViewSet(viewsets.ViewSet):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "penalty.view", "impose": "penalty.impose"}

    def list(self, request):
        return Response({"results": flagged_customers()})

    @action(detail=False, methods=["post"], url_path="impose")
    def impose(self, request):
        serializer = ImposePenaltySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = impose_penalty(
            data["customer_id"],
            data["fine_amount"],
            data["large_count"],
            data["small_count"],
            performed_by=request.user,
        )
        create_audit_log_from_request(
            request,
            action="penalty.impose",
            entity="customer",
            entity_id=data["customer_id"],
            after_snapshot=result.as_dict(),
        )
        return Response(result.as_dict(), status=status.HTTP_201_CREATED)


class MonthlyPaymentViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = MonthlyPayment.objects.select_related("customer")
    serializer_class = MonthlyPaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "monthly.view", "retrieve": "monthly.view", "mark_paid": "monthly.manage"}

    def get_queryset(self):
        qs = self.queryset.order_by("-year", "-month", "customer__name")
        for param in ("year", "month", "status"):
            value = self.request.query_params.get(param)
            if value:
                qs = qs.filter(**{param: value})
        return qs

    @action(detail=True, methods=["post"], url_path="mark-paid")
    def mark_paid(self, request, pk=None):
        payment = self.get_object()
        serializer = MarkPaidSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before = self.get_serializer(payment).data
        payment = mark_monthly_payment_paid(payment.id, amount_paid=serializer.validated_data.get("amount_paid"))
        after = self.get_serializer(payment).data
        create_audit_log_from_request(
            request,
            action="monthly_payment.mark_paid",
            entity="monthly_payment",
            entity_id=payment.id,
            before_snapshot=before,
            after_snapshot=after,
        )
        return Response(after)
