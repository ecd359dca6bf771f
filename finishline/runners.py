"""Runner roster: single adds, CSV bulk import and listing."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from . import datastore
from .errors import ValidationError
from .scoring import validate_house

logger = logging.getLogger(__name__)

CSV_COLUMNS = ("name", "house", "age_group", "date_of_birth", "gender")

# Oldest age (inclusive) for each group label
AGE_GROUPS = (
    (11, "Under 11"),
    (12, "Under 12"),
    (13, "Under 13"),
    (14, "Under 14"),
    (15, "Under 15"),
    (16, "Under 16"),
    (17, "Under 17"),
)
OLDEST_GROUP = "Under 18"


def _parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date of birth '{value}'. Expected YYYY-MM-DD.")


def age_on(date_of_birth: Any, today: Optional[date] = None) -> int:
    born = _parse_date(date_of_birth)
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def determine_age_group(date_of_birth: Any, today: Optional[date] = None) -> str:
    age = age_on(date_of_birth, today)
    for oldest, label in AGE_GROUPS:
        if age <= oldest:
            return label
    return OLDEST_GROUP


def _normalize(runner: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    name = (runner.get("name") or "").strip()
    if not name:
        raise ValidationError("Runner name is required")
    house = validate_house((runner.get("house") or "").strip())
    dob = runner.get("date_of_birth")
    row: Dict[str, Any] = {
        "name": name,
        "house": house,
        "gender": (runner.get("gender") or "").strip().lower() or None,
    }
    if dob:
        row["date_of_birth"] = _parse_date(dob).isoformat()
    age_group = (runner.get("age_group") or "").strip()
    if not age_group:
        if not dob:
            raise ValidationError(f"Runner {name} needs an age group or a date of birth")
        age_group = determine_age_group(dob, today)
    row["age_group"] = age_group
    return row


def parse_runner_csv(text: str) -> List[Dict[str, str]]:
    """Parse the bulk upload format.

    The first line is a header and is ignored.  Columns are
    ``name, house, age_group, date_of_birth, gender``; values are split on
    commas with no quoting.  Lines missing any column are skipped.
    """
    runners: List[Dict[str, str]] = []
    for line in (text or "").splitlines()[1:]:
        line = line.strip()
        if not line:
            continue
        values = [v.strip() for v in line.split(",")]
        if len(values) < len(CSV_COLUMNS) or not all(values[: len(CSV_COLUMNS)]):
            logger.debug("skipping incomplete runner line %r", line)
            continue
        row = dict(zip(CSV_COLUMNS, values))
        row["gender"] = row["gender"].lower()
        runners.append(row)
    return runners


def add_runner(runner: Dict[str, Any], store=None) -> Dict[str, Any]:
    store = store or datastore
    rows = store.insert("runners", _normalize(runner))
    logger.info("add_runner id=%s house=%s", rows[0].get("id"), rows[0].get("house"))
    return rows[0]


def import_runners(text: str, store=None) -> List[Dict[str, Any]]:
    """Insert every complete CSV line in one statement."""
    store = store or datastore
    parsed = parse_runner_csv(text)
    if not parsed:
        raise ValidationError("No complete runner rows found in upload")
    rows = [_normalize(r) for r in parsed]
    inserted = store.insert("runners", rows)
    logger.info("import_runners count=%d", len(inserted))
    return inserted


def list_runners(age_group: Optional[str] = None, store=None) -> List[Dict[str, Any]]:
    store = store or datastore
    filters = {"age_group": age_group} if age_group else None
    return store.select("runners", filters, order="name")


def delete_runners(runner_ids: Iterable[Any], store=None) -> int:
    store = store or datastore
    ids = []
    for rid in runner_ids or []:
        try:
            ids.append(int(rid))
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid runner id '{rid}'")
    if not ids:
        raise ValidationError("Select at least one runner to delete")
    with store.atomic():
        store.delete("runner_races", {"runner_id": ids})
        store.delete("runners", {"id": ids})
    logger.info("delete_runners count=%d", len(ids))
    return len(ids)
