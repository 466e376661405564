from django.urls import path
from rest_framework.routers import DefaultRouter

from apps.inventory.views import AllocationPreviewView, StockBatchViewSet, StockSummaryView

router = DefaultRouter()
router.register("batches", StockBatchViewSet, basename="stock-batch")

urlpatterns = [
    path("stocks/", StockSummaryView.as_view(), name="inventory-stock"),
    path("allocation-preview/", AllocationPreviewView.as_view(), name="inventory-allocation-preview"),
]
urlpatterns += router.urls
