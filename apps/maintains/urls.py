from rest_framework.routers import DefaultRouter

from apps.maintains.views import MaintainsViewSet

router = DefaultRouter()
router.register("maintains", MaintainsViewSet, basename="maintains")

urlpatterns = router.urls
