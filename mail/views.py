import logging

from django.shortcuts import get_object_or_404
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from .linking import link_thread_to_job, unlink_thread
from .models import AuditEvent, EmailMessage, EmailThread, SyncState
from .orchestrator import MailboxSyncOrchestrator
from .serializers import (
    AuditEventSerializer,
    EmailMessageSerializer,
    EmailThreadSerializer,
    LinkJobSerializer,
    SyncStateSerializer,
    SyncTriggerSerializer,
)
from .sync_status import force_clear_sync_lock, reset_sync_cooldown

logger = logging.getLogger(__name__)


def _actor(request):
    user = getattr(request, "user", None)
    if user is not None and user.is_authenticated:
        return user.get_username()
    return "anonymous"


class SyncViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    POST /sync/ runs one pass and always answers 200 with the run summary,
    including skipped and failed runs. Lock and cooldown overrides are
    admin-only.
    """
    queryset = SyncState.objects.all()
    serializer_class = SyncStateSerializer
    lookup_field = "scope_key"
    lookup_value_regex = "[^/]+"

    def create(self, request, *args, **kwargs):
        trigger = SyncTriggerSerializer(data=request.data)
        trigger.is_valid(raise_exception=True)
        summary = MailboxSyncOrchestrator().run(
            scope_key=trigger.validated_data.get("scope_key"),
            actor=_actor(request),
        )
        return Response(summary, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"], url_path="clear-lock", permission_classes=[IsAdminUser])
    def clear_lock(self, request, scope_key=None):
        get_object_or_404(SyncState, scope_key=scope_key)
        state = force_clear_sync_lock(scope_key, actor=_actor(request))
        return Response(SyncStateSerializer(state).data)

    @action(detail=True, methods=["post"], url_path="reset-cooldown", permission_classes=[IsAdminUser])
    def reset_cooldown(self, request, scope_key=None):
        get_object_or_404(SyncState, scope_key=scope_key)
        state = reset_sync_cooldown(scope_key, actor=_actor(request))
        return Response(SyncStateSerializer(state).data)


class EmailThreadViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = EmailThreadSerializer

    def get_queryset(self):
        qs = EmailThread.objects.all().select_related("job")
        scope_key = self.request.query_params.get("scope_key")
        if scope_key:
            qs = qs.filter(scope_key=scope_key)
        if self.request.query_params.get("include_deleted") != "1":
            qs = qs.filter(is_deleted=False)
        return qs

    @action(detail=True, methods=["post"], url_path="link-job")
    def link_job(self, request, pk=None):
        thread = self.get_object()
        payload = LinkJobSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        job = payload.validated_data["job"]
        if job is None:
            thread = unlink_thread(thread, actor=_actor(request))
        else:
            thread = link_thread_to_job(thread, job, actor=_actor(request))
        return Response(EmailThreadSerializer(thread).data)


class EmailMessageViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = EmailMessageSerializer

    def get_queryset(self):
        qs = EmailMessage.objects.all().prefetch_related("attachments")
        thread_id = self.request.query_params.get("thread")
        if thread_id:
            qs = qs.filter(thread_id=thread_id)
        return qs


class AuditEventViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditEvent.objects.all()
    serializer_class = AuditEventSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        qs = super().get_queryset()
        for param in ("event_type", "subject_type", "subject_id"):
            value = self.request.query_params.get(param)
            if value:
                qs = qs.filter(**{param: value})
        return qs
