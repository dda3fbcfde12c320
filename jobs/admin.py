from django.contrib import admin

from .models import Job


@admin.register(Job)
class JobAdmin(admin.ModelAdmin):
    list_display = ("job_number", "title", "status", "customer_name")
    list_filter = ("status",)
    search_fields = ("job_number", "title", "customer_name")
