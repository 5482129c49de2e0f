import logging

import httpx
from django.conf import settings
from django.db import connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def _db_ok() -> bool:
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        return True
    except Exception:
        logger.warning("database probe failed", exc_info=True)
        return False


def _messaging_ok() -> bool | None:
    base_url = getattr(settings, "NOTIFY_BASE_URL", "")
    if not getattr(settings, "USE_HTTP_ADAPTERS", True) or not base_url:
        return None
    try:
        return httpx.get(f"{base_url.rstrip('/')}/health", timeout=1.0).status_code == 200
    except httpx.HTTPError:
        return False


def health_view(_request):
    # Notifications are best effort: the messaging gateway never fails the probe
    db_ok = _db_ok()
    messaging_ok = _messaging_ok()
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "messaging": {"ok": messaging_ok},
                "payment_providers": sorted(
                    m for m, conf in getattr(settings, "PAYMENT_PROVIDERS", {}).items() if conf.get("API_URL")
                ),
            },
        },
        status=code,
    )
