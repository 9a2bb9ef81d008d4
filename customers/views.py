import logging

from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from billing.ledger import current_balance, wallet_balance
from billing.monthly import monthly_due
from billing.pricing import days_covered
from billing.status import calculate_status
from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, scope_customers_for_user
from common.utils import local_today, parse_iso_date
from customers.models import Customer
from customers.serializers import (
    AssignDeliveryPersonSerializer,
    CustomerSerializer,
    DeliveryModificationSerializer,
    PauseRequestSerializer,
    PauseSerializer,
    SubscribeSerializer,
)
from customers.services import (
    assign_delivery_person,
    create_pause,
    remove_pause,
    set_delivery_modification,
    subscribe,
)

logger = logging.getLogger(__name__)


class CustomerViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Customer.objects.select_related("subscription", "delivery_person")
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "subscribe": "customers.pause",
        "pauses": "customers.pause",
        "delete_pause": "customers.pause",
        "modify": "customers.pause",
    }

    def get_queryset(self):
        qs = scope_customers_for_user(self.queryset, self.request.user).order_by("name")
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    @action(detail=True, methods=["get"], url_path="status")
    def status_detail(self, request, pk=None):
        customer = self.get_object()
        balance = wallet_balance(customer.id)
        subscription = getattr(customer, "subscription", None)
        today = local_today()
        return Response(
            {
                "customer_id": str(customer.id),
                "stored_status": customer.status,
                "status": calculate_status(customer.id, today=today),
                "wallet_balance": balance,
                "bottles": current_balance(customer.id).as_dict(),
                "days_covered": days_covered(balance, subscription.daily_price) if subscription else 0,
                "monthly_payment": monthly_due(customer.id, today.year, today.month) if subscription else None,
            }
        )

    @action(detail=True, methods=["post"], url_path="subscribe")
    def subscribe(self, request, pk=None):
        customer = self.get_object()
        serializer = SubscribeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscribe(
            customer.id,
            serializer.validated_data["daily_quantity"],
            start_date=serializer.validated_data.get("start_date"),
        )
        customer.refresh_from_db()
        return Response(CustomerSerializer(customer).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get", "post"], url_path="pauses")
    def pauses(self, request, pk=None):
        customer = self.get_object()
        if request.method == "GET":
            upcoming = customer.pauses.order_by("pause_date")
            return Response(PauseSerializer(upcoming, many=True).data)

        serializer = PauseRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = create_pause(customer.id, serializer.validated_data["dates"])
        return Response(
            {"created": [day.isoformat() for day in result["created"]], "new_status": result["new_status"]},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["delete"], url_path=r"pauses/(?P<pause_date>\d{4}-\d{2}-\d{2})")
    def delete_pause(self, request, pk=None, pause_date=None):
        customer = self.get_object()
        day = parse_iso_date(pause_date)
        if day is None:
            raise ValidationError({"pause_date": "Invalid date."})
        new_status = remove_pause(customer.id, day)
        return Response({"new_status": new_status})

    @action(detail=True, methods=["post"], url_path="modifications")
    def modify(self, request, pk=None):
        customer = self.get_object()
        serializer = DeliveryModificationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        modification = set_delivery_modification(
            customer.id,
            serializer.validated_data["date"],
            serializer.validated_data["quantity"],
            notes=serializer.validated_data.get("notes", ""),
        )
        return Response(DeliveryModificationSerializer(modification).data, status=status.HTTP_201_CREATED)


class AdminCustomerViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    queryset = Customer.objects.select_related("subscription", "delivery_person")
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "customers.assign", "assign": "customers.assign"}

    def get_queryset(self):
        qs = self.queryset.order_by("name")
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    @action(detail=True, methods=["post"], url_path="assign")
    def assign(self, request, pk=None):
        customer = self.get_object()
        serializer = AssignDeliveryPersonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before = {"delivery_person": str(customer.delivery_person_id) if customer.delivery_person_id else None}
        result = assign_delivery_person(
            customer.id,
            serializer.validated_data["delivery_person_id"],
            performed_by=request.user,
        )
        create_audit_log_from_request(
            request,
            action="customer.assign",
            entity="customer",
            entity_id=customer.id,
            before_snapshot=before,
            after_snapshot={"delivery_person": str(serializer.validated_data["delivery_person_id"]), **result},
        )
        return Response(result)
