from rest_framework.routers import DefaultRouter

from apps.sales.views import PaymentViewSet, SaleViewSet

router = DefaultRouter()
router.register("sales", SaleViewSet, basename="sale")
router.register("payments", PaymentViewSet, basename="payment")

urlpatterns = router.urls
