import logging
from typing import Any, Dict, Iterator, Optional

from . import datastore
from .admin_log import utcnow_iso
from .errors import ValidationError

logger = logging.getLogger(__name__)

ACTIVE = "active"
DISABLED = "disabled"


def get_platform_status(platform: str, store=None) -> Dict[str, Any]:
    """Return ``{"status", "message"}``; platforms without a row are active."""
    store = store or datastore
    rows = store.select("platform_status", {"platform": platform})
    if not rows:
        return {"status": ACTIVE, "message": ""}
    row = rows[0]
    return {"status": row.get("status") or ACTIVE, "message": row.get("message") or ""}


def is_disabled(platform: str, store=None) -> bool:
    return get_platform_status(platform, store=store)["status"] == DISABLED


def set_platform_status(platform: str, status: str, message: Optional[str] = None, updated_by: Optional[str] = None, store=None) -> Dict[str, Any]:
    if status not in (ACTIVE, DISABLED):
        raise ValidationError(f"Unknown platform status '{status}'")
    store = store or datastore
    if message is None:
        message = "System operational" if status == ACTIVE else "System temporarily disabled"
    patch = {"status": status, "message": message, "updated_by": updated_by, "last_updated": utcnow_iso()}
    if store.select("platform_status", {"platform": platform}):
        store.update("platform_status", patch, {"platform": platform})
    else:
        store.insert("platform_status", {"platform": platform, **patch})
    logger.info("platform_status platform=%s status=%s", platform, status)
    return {"status": status, "message": message}


def watch_platform_status(platform: str, timeout: Optional[float] = None, store=None) -> Iterator[Dict[str, Any]]:
    """Yield the new status each time the platform's row is updated."""
    store = store or datastore
    for event in store.subscribe("platform_status", {"platform": platform}, ["UPDATE"], timeout=timeout):
        record = event.get("record") or {}
        yield {"status": record.get("status") or ACTIVE, "message": record.get("message") or ""}
