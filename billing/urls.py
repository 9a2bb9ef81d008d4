from django.urls import path
from rest_framework.routers import DefaultRouter

from billing.views import (
    AdminWalletView,
    BottleLedgerViewSet,
    MonthlyPaymentViewSet,
    PenaltyViewSet,
    WalletTransactionViewSet,
)

router = DefaultRouter()
router.register(r"wallet-transactions", WalletTransactionViewSet, basename="wallet-transaction")
router.register(r"bottle-ledger", BottleLedgerViewSet, basename="bottle-ledger")
router.register(r"admin/penalties", PenaltyViewSet, basename="penalty")
router.register(r"admin/monthly-payments", MonthlyPaymentViewSet, basename="monthly-payment")

urlpatterns = router.urls + [
    path("admin/customers/<uuid:customer_id>/wallet/", AdminWalletView.as_view(), name="admin_wallet"),
]
