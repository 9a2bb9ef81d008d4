import logging
import uuid

from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, get_user_role, scope_customers_for_user
from common.utils import local_today, parse_iso_date
from core.models import User
from deliveries.models import Delivery
from deliveries.scheduler import ensure_deliveries_for_window
from deliveries.serializers import DeliverySerializer, MarkDeliverySerializer
from deliveries.settlement import mark_delivery

logger = logging.getLogger(__name__)


class DeliveryViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Delivery.objects.select_related("customer")
    serializer_class = DeliverySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "deliveries.view",
        "retrieve": "deliveries.view",
        "today": "deliveries.view",
        "mark": "deliveries.mark",
    }

    def get_queryset(self):
        qs = scope_customers_for_user(self.queryset, self.request.user, prefix="customer__")
        qs = qs.order_by("delivery_date", "customer__name")

        delivery_date = self.request.query_params.get("date")
        status_filter = self.request.query_params.get("status")
        if delivery_date:
            day = parse_iso_date(delivery_date)
            if day is None:
                raise ValidationError({"date": "Invalid date."})
            qs = qs.filter(delivery_date=day)
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def _route_owner(self, request):
        if get_user_role(request.user) == User.Role.DELIVERY:
            return request.user.id
        delivery_person_id = request.query_params.get("delivery_person")
        if not delivery_person_id:
            raise ValidationError({"delivery_person": "This query parameter is required for admins."})
        try:
            return uuid.UUID(delivery_person_id)
        except ValueError:
            raise ValidationError({"delivery_person": "Must be a valid UUID."})

    @action(detail=False, methods=["get"], url_path="today", pagination_class=None)
    def today(self, request):
        """Ensure the day's rows exist for the route, then list them."""
        raw_date = request.query_params.get("date")
        day = parse_iso_date(raw_date) if raw_date else local_today()
        if day is None:
            raise ValidationError({"date": "Invalid date."})
        delivery_person_id = self._route_owner(request)
        summary = ensure_deliveries_for_window(delivery_person_id, day, day)

        deliveries = (
            Delivery.objects.select_related("customer")
            .filter(delivery_person_id=delivery_person_id, delivery_date=day)
            .order_by("customer__name")
        )
        return Response(
            {
                "date": day.isoformat(),
                "summary": summary.as_dict(),
                "results": DeliverySerializer(deliveries, many=True).data,
            }
        )

    @action(detail=True, methods=["post"], url_path="mark")
    def mark(self, request, pk=None):
        delivery = self.get_object()
        serializer = MarkDeliverySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = mark_delivery(
            delivery.id,
            serializer.validated_data["outcome"],
            serializer.validated_data.get("bottles_collected"),
            notes=serializer.validated_data.get("notes", ""),
            performed_by=request.user,
        )
        create_audit_log_from_request(
            request,
            action="delivery.mark",
            entity="delivery",
            entity_id=delivery.id,
            before_snapshot={"status": delivery.status},
            after_snapshot=result.as_dict(),
        )
        return Response(result.as_dict())
