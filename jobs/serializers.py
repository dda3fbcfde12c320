from rest_framework import serializers

from .models import Job


class JobSerializer(serializers.ModelSerializer):
    linked_thread_count = serializers.IntegerField(source="email_threads.count", read_only=True)

    class Meta:
        model = Job
        fields = [
            "id",
            "job_number",
            "title",
            "status",
            "customer_name",
            "site_address",
            "created_at",
            "updated_at",
            "linked_thread_count",
        ]
