from rest_framework.routers import DefaultRouter

from apps.customers.views import CustomerCategoryViewSet, CustomerDueViewSet, CustomerViewSet

router = DefaultRouter()
router.register("customer-categories", CustomerCategoryViewSet, basename="customer-category")
router.register("customers", CustomerViewSet, basename="customer")
router.register("customer-dues", CustomerDueViewSet, basename="customer-due")

urlpatterns = router.urls
