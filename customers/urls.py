from rest_framework.routers import DefaultRouter

from customers.views import AdminCustomerViewSet, CustomerViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"admin/customers", AdminCustomerViewSet, basename="admin-customer")

urlpatterns = router.urls
