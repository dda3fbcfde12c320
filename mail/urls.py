from django.urls import include, path
from rest_framework import routers

from .views import SyncViewSet

router = routers.SimpleRouter()
router.register(r"sync", SyncViewSet, basename="mail-sync")

urlpatterns = [
    path("", include(router.urls)),
]
