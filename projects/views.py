from django.http import JsonResponse
from django.views.decorators.cache import cache_control
from django.views.decorators.http import require_POST, require_GET
from django.urls import reverse

from .forms import RedirectAuditForm
from . import redirect_audit_utils


# Redirect Chains Audit
@cache_control(no_cache=True, must_revalidate=True, no_store=True)
@require_POST
def redirect_audit_start(request):
    """
    Starts an audit and returns immediately with a task id (JSON).
    The client polls the status URL for the result.
    """
    form = RedirectAuditForm(request.POST)
    if not form.is_valid():
        return JsonResponse(
            {"error": "Please enter a valid website URL.", "form_errors": form.errors},
            status=400,
        )

    url = form.cleaned_data["url"]
    task_id = redirect_audit_utils.start_redirect_audit_task(url)

    return JsonResponse(
        {
            "task_id": task_id,
            "status_url": reverse("projects:redirect_audit_status", args=[task_id]),
        }
    )


@cache_control(no_cache=True, must_revalidate=True, no_store=True)
@require_GET
def redirect_audit_status(request, task_id):
    """
    Polling endpoint. Returns the task state from the cache, 404 for unknown
    (or expired) tasks.
    """
    task = redirect_audit_utils.get_redirect_audit_task(str(task_id))
    if not task:
        return JsonResponse({"status": "unknown"}, status=404)

    payload = {"status": task.get("status", "unknown"), "url": task.get("url")}
    if payload["status"] == "done":
        payload["result"] = task.get("result")
    elif payload["status"] == "error":
        payload["error"] = task.get("error") or "Unknown error"

    return JsonResponse(payload)
