from django.core.cache import cache
from django.db import DatabaseError, connection
from django.http import JsonResponse
from rest_framework.decorators import api_view
from rest_framework.response import Response
from jaspel.models import FeeFormula


@api_view(["GET"])
def api_root(request, format=None):
    base = "/api/v1/jaspel/"
    routes = {
        "fee_records": "fee-records/",
        "preview": "preview/",
        "recalculate": "recalculate/",
    }
    endpoints = {name: request.build_absolute_uri(base + suffix) for name, suffix in routes.items()}
    endpoints["schema"] = request.build_absolute_uri("/api/schema/")
    return Response({"endpoints": endpoints})


def health_check(request):
    """Database, cache and whether every shift window has an active formula."""
    report = {"status": "healthy"}

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
        report["active_formulas"] = sorted(
            FeeFormula.objects.filter(is_active=True).values_list("shift_window", flat=True)
        )
    except DatabaseError as e:
        report.update(status="unhealthy", database=f"error: {e}")
        return JsonResponse(report, status=503)
    report["database"] = "connected"

    cache.set("health_check", "ok", 5)
    report["cache"] = "connected" if cache.get("health_check") == "ok" else "degraded"
    if not report["active_formulas"]:
        report["status"] = "degraded"

    return JsonResponse(report)
