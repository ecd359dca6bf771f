import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import datastore
from .errors import FinishLineError, ValidationError

logger = logging.getLogger(__name__)

LOGIN = "login"
RESET = "reset_house_points"
BACKUP = "backup_house_points"
RESTORE = "restore_house_points"
PASSWORD_CHANGE = "change_password"
POINT_CALCULATION = "calculate_house_points"
QUICK_POINT = "add_quick_point"

ACTIONS = frozenset({LOGIN, RESET, BACKUP, RESTORE, PASSWORD_CHANGE, POINT_CALCULATION, QUICK_POINT})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_actor() -> str:
    return os.environ.get("FINISHLINE_ACTOR") or "anonymous"


def log_admin_action(action: str, details: Optional[Dict[str, Any]] = None, actor: Optional[str] = None, store=None) -> Optional[Dict[str, Any]]:
    """Append an entry to the admin action log.

    The log is an audit trail of commands that already happened, so a failed
    write is reported through ``logger.exception`` and None is returned
    rather than failing the command itself.
    """
    if action not in ACTIONS:
        raise ValidationError(f"Unknown admin action '{action}'")
    store = store or datastore
    entry = {
        "action": action,
        "user_id": actor or default_actor(),
        "timestamp": utcnow_iso(),
        "details": json.dumps(details or {}, default=str),
    }
    try:
        rows = store.insert("admin_logs", entry)
    except FinishLineError:
        logger.exception("admin_log write failed action=%s", action)
        return None
    logger.info("admin_action action=%s user=%s", action, entry["user_id"])
    return rows[0] if rows else entry


def list_admin_logs(limit: int = 50, store=None) -> List[Dict[str, Any]]:
    store = store or datastore
    rows = store.select("admin_logs", None, order="-timestamp", limit=limit)
    out = []
    for row in rows:
        details = row.get("details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                pass
        out.append({**row, "details": details})
    return out
