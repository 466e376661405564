from rest_framework.routers import DefaultRouter

from apps.catalog.views import ProductViewSet, UnitConversionViewSet, UnitViewSet

router = DefaultRouter()
router.register("units", UnitViewSet, basename="unit")
router.register("products", ProductViewSet, basename="product")
router.register("unit-conversions", UnitConversionViewSet, basename="unit-conversion")

urlpatterns = router.urls
