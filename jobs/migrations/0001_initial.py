from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Job",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("job_number", models.CharField(max_length=32, unique=True)),
                ("title", models.CharField(max_length=255)),
                ("status", models.CharField(choices=[("draft", "Draft"), ("quoted", "Quoted"), ("won", "Won"), ("lost", "Lost"), ("in_progress", "In Progress"), ("completed", "Completed"), ("cancelled", "Cancelled")], default="draft", max_length=64)),
                ("customer_name", models.CharField(blank=True, default="", max_length=255)),
                ("site_address", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="jobs_job_status_5f1c2e_idx")],
            },
        ),
    ]
