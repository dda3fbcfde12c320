from django.contrib import admin
from django.urls import include, path
from rest_framework import routers

from jobs.views import JobViewSet
from mail.views import AuditEventViewSet, EmailMessageViewSet, EmailThreadViewSet

router = routers.DefaultRouter()
router.register(r"jobs", JobViewSet, basename="job")
router.register(r"mail/threads", EmailThreadViewSet, basename="emailthread")
router.register(r"mail/messages", EmailMessageViewSet, basename="emailmessage")
router.register(r"mail/audit-events", AuditEventViewSet, basename="auditevent")

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/mail/", include("mail.urls")),
    path("api/", include(router.urls)),
]
