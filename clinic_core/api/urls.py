# clinic_core/api/urls.py
from __future__ import annotations

from django.urls import path
from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from clinic_core.alerts.api.views import AlertViewSet
from clinic_core.audit.api.views import AuditEventViewSet
from clinic_core.billing.api.views import InvoiceViewSet
from clinic_core.lab.api.views import LabTestViewSet
from clinic_core.mobile_payments.api.views import MobilePaymentViewSet, ZenoPayWebhookView
from clinic_core.pharmacy.api.views import PrescriptionViewSet
from clinic_core.visits.api.views import VisitViewSet

router = DefaultRouter()

router.register(r"visits", VisitViewSet, basename="visits")
router.register(r"lab/tests", LabTestViewSet, basename="lab-tests")
router.register(r"pharmacy/prescriptions", PrescriptionViewSet, basename="pharmacy-prescriptions")
router.register(r"billing/invoices", InvoiceViewSet, basename="billing-invoices")
router.register(r"payments/mobile", MobilePaymentViewSet, basename="mobile-payments")
router.register(r"alerts", AlertViewSet, basename="alerts")
router.register(r"audit/events", AuditEventViewSet, basename="audit-events")

urlpatterns = [
    # Staff login (JWT)
    path("auth/token/", TokenObtainPairView.as_view(), name="token-obtain"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token-refresh"),

    # Provider callback (API-key authenticated, not JWT)
    path("webhooks/zenopay/", ZenoPayWebhookView.as_view(), name="zenopay-webhook"),

    # Router URLs last (so explicit paths win if ever overlapping)
    *router.urls,
]
