from django.urls import path
from . import views

app_name = "projects"

urlpatterns = [
    # Redirect Chains Audit async endpoints
    path(
        "projects/redirect-audit/start/",
        views.redirect_audit_start,
        name="redirect_audit_start",
    ),
    path(
        "projects/redirect-audit/status/<str:task_id>/",
        views.redirect_audit_status,
        name="redirect_audit_status",
    ),
]
