"""Append-only house points ledger with backup, restore and reset.

Totals are always derived by summing entries, so concurrent quick points
never lose updates.  Resetting is only allowed once a backup of the
current entries has been written.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from . import datastore
from .admin_log import BACKUP, QUICK_POINT, RESET, RESTORE, log_admin_action, utcnow_iso
from .errors import MalformedBackupError, UnknownHouseError
from .scoring import HOUSES, house_totals, validate_house

logger = logging.getLogger(__name__)

LATEST_BACKUP_KEY = "house_points_backup"
HISTORY_PREFIX = "house_points_backup_"


def history_key(timestamp: str) -> str:
    return HISTORY_PREFIX + timestamp.replace(":", "_").replace(".", "_")


def parse_backup(serialized: str) -> Dict[str, Any]:
    """Validate a backup document and return it as ``{"timestamp", "data"}``."""
    try:
        backup = json.loads(serialized)
    except (TypeError, ValueError) as exc:
        raise MalformedBackupError(f"Backup is not valid JSON: {exc}")
    if not isinstance(backup, dict):
        raise MalformedBackupError("Backup must be a JSON object")
    timestamp = backup.get("timestamp")
    data = backup.get("data")
    if not isinstance(timestamp, str) or not timestamp:
        raise MalformedBackupError("Backup is missing its timestamp")
    if not isinstance(data, list):
        raise MalformedBackupError("Invalid backup data format: 'data' must be a list")

    entries = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            raise MalformedBackupError(f"Backup entry {idx} is not an object")
        points = item.get("points")
        if isinstance(points, bool) or not isinstance(points, int):
            raise MalformedBackupError(f"Backup entry {idx} has invalid points {points!r}")
        try:
            house = validate_house(item.get("house"))
        except UnknownHouseError as exc:
            raise MalformedBackupError(f"Backup entry {idx}: {exc}")
        entries.append({"house": house, "points": points})
    return {"timestamp": timestamp, "data": entries}


class HousePointsLedger:
    def __init__(self, store=None, actor: Optional[str] = None):
        self.store = store or datastore
        self.actor = actor

    def _log(self, action: str, details: Dict[str, Any]) -> None:
        log_admin_action(action, details, actor=self.actor, store=self.store)

    def entries(self) -> List[Dict[str, Any]]:
        return self.store.select("house_points", None, order="id")

    def totals(self) -> Dict[str, int]:
        return house_totals(self.entries())

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self.store.select("house_points", None, order=["-created_at", "-id"], limit=limit)

    def add_quick_point(self, house: str) -> Dict[str, Any]:
        validate_house(house)
        rows = self.store.insert("house_points", {"house": house, "points": 1})
        self._log(QUICK_POINT, {"house": house, "points": 1})
        logger.info("add_quick_point house=%s", house)
        return rows[0]

    def _write_backup(self) -> Tuple[List[Dict[str, Any]], str, str]:
        """Read every entry and write it to both backup slots.

        Must run inside ``store.atomic()``. Returns the entries read, the
        serialized backup and its timestamp.
        """
        rows = self.entries()
        timestamp = utcnow_iso()
        payload = json.dumps(
            {
                "timestamp": timestamp,
                "data": [{"house": r["house"], "points": int(r["points"])} for r in rows],
            }
        )
        existing = self.store.select("admin_settings", {"key": LATEST_BACKUP_KEY})
        if existing:
            self.store.update(
                "admin_settings",
                {"value": payload, "updated_at": timestamp},
                {"key": LATEST_BACKUP_KEY},
            )
        else:
            self.store.insert(
                "admin_settings",
                {"key": LATEST_BACKUP_KEY, "value": payload, "updated_at": timestamp},
            )
        self.store.insert(
            "admin_settings",
            {"key": history_key(timestamp), "value": payload, "updated_at": timestamp},
        )
        return rows, payload, timestamp

    def backup(self) -> str:
        """Snapshot every entry into the latest and a timestamped backup slot.

        Both slots must be written; a failure propagates as ``GatewayError``.
        Returns the serialized backup.
        """
        with self.store.atomic():
            rows, payload, timestamp = self._write_backup()

        self._log(BACKUP, {"timestamp": timestamp, "entries": len(rows)})
        logger.info("backup house_points entries=%d key=%s", len(rows), history_key(timestamp))
        return payload

    def latest_backup(self) -> Optional[str]:
        rows = self.store.select("admin_settings", {"key": LATEST_BACKUP_KEY})
        return rows[0]["value"] if rows else None

    def list_backups(self) -> List[Dict[str, Any]]:
        """Historical backup slots, newest first."""
        rows = self.store.select("admin_settings", None, order="-updated_at")
        return [
            {"key": r["key"], "updated_at": r.get("updated_at"), "value": r.get("value")}
            for r in rows
            if str(r.get("key", "")).startswith(HISTORY_PREFIX)
        ]

    def reset_all_points(self) -> str:
        """Back up, then delete the entries that backup holds.

        The backup and the delete commit together, and only the backed-up
        ids are deleted, so an entry added meanwhile survives the reset.
        If the backup fails nothing is deleted. Returns the backup taken.
        """
        with self.store.atomic():
            rows, payload, timestamp = self._write_backup()
            if rows:
                self.store.delete("house_points", {"id": [r["id"] for r in rows]})

        self._log(BACKUP, {"timestamp": timestamp, "entries": len(rows)})
        self._log(RESET, {"timestamp": utcnow_iso(), "backup": timestamp, "entries": len(rows)})
        logger.info("reset house_points entries=%d", len(rows))
        return payload

    def restore(self, serialized: str) -> Dict[str, int]:
        """Replace every entry with the entries of a backup.

        Entries are inserted with their original point values.  The clear and
        the re-insert commit together; no further backup is taken.
        """
        backup = parse_backup(serialized)
        with self.store.atomic():
            self.store.delete("house_points", {})
            if backup["data"]:
                self.store.insert("house_points", backup["data"])
        self._log(RESTORE, {"timestamp": backup["timestamp"], "entries": len(backup["data"])})
        logger.info("restore house_points entries=%d from=%s", len(backup["data"]), backup["timestamp"])
        return self.totals()


__all__ = ["HOUSES", "HousePointsLedger", "parse_backup", "history_key"]
