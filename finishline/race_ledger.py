"""Race lifecycle and finish-order bookkeeping.

A :class:`RaceLedger` is the in-memory projection of one race as seen by one
session: the race row, the runners assigned to it and the order in which
they finished.  Every mutation goes through a command method which updates
the projection, writes through to the Persistence Gateway and undoes the
projection change if the write fails.

Finishing positions come from the ``race_events.finish_seq`` counter, which
the gateway increments atomically, so two operators recording finishes for
the same race never hand out the same automatic position.
"""

from __future__ import annotations

import logging
from datetime import date as date_cls, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from . import datastore, scoring
from .admin_log import POINT_CALCULATION, log_admin_action
from .errors import (
    ConcurrentModificationError,
    DuplicateFinishError,
    EmptyLedgerError,
    GatewayError,
    InvalidTransitionError,
    PointsAlreadyAwardedError,
    RaceNotFoundError,
    RunnerNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
STATUSES = (PENDING, ACTIVE, COMPLETED)

# Forward-only lifecycle; completed is terminal.
TRANSITIONS = {PENDING: ACTIVE, ACTIVE: COMPLETED}

_FINISH_FIELDS = ("finish_time", "position", "running_time_seconds", "arrival_seq")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_id(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {what} id '{value}'")


def _parse_duration(minutes: Any, seconds: Any) -> int:
    """Return total seconds; blank values count as zero."""
    try:
        mins = int(minutes) if minutes not in (None, "") else 0
        secs = int(seconds) if seconds not in (None, "") else 0
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid running time {minutes}:{seconds}. Expected whole minutes and seconds.")
    if mins < 0 or secs < 0 or secs >= 60:
        raise ValidationError(f"Invalid running time {minutes}:{seconds}. Seconds must be 0-59.")
    return mins * 60 + secs


def _manual_position(value: Any) -> Optional[int]:
    """Return the operator's placement, or None to use the next position."""
    if value in (None, ""):
        return None
    try:
        position = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid placement '{value}'. Expected a whole number.")
    return position if position > 0 else None


def _finish_sort_key(runner: Dict[str, Any]):
    pos = runner.get("position")
    return (pos is None, pos or 0, runner.get("finish_time") or "")


def _arrival_sort_key(runner: Dict[str, Any]):
    # arrival_seq is the finish_seq value the finish took
    return (runner.get("arrival_seq") or 0, runner.get("finish_time") or "", runner.get("id") or 0)


class RaceLedger:
    """Owns the selected race and its finish order."""

    def __init__(self, store=None, actor: Optional[str] = None, clock=None):
        self.store = store or datastore
        self.actor = actor
        self._clock = clock or _utcnow_iso
        self.current_race: Optional[Dict[str, Any]] = None
        self.runners: Dict[int, Dict[str, Any]] = {}
        self.finish_order: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Race selection
    # ------------------------------------------------------------------

    def _require_race(self) -> Dict[str, Any]:
        if self.current_race is None:
            raise InvalidTransitionError("No race selected")
        return self.current_race

    def _reset_projection(self, race: Optional[Dict[str, Any]]) -> None:
        self.current_race = race
        self.runners = {}
        self.finish_order = []

    def list_races(self) -> List[Dict[str, Any]]:
        return self.store.select("race_events", None, order=["-date", "-id"])

    def create_race(self, name: str, date: Any) -> Dict[str, Any]:
        """Create a pending race and make it the current race.

        Switching race discards the in-memory runners and finish order; the
        new race starts with neither.
        """
        name = (name or "").strip()
        if isinstance(date, date_cls):
            date = date.isoformat()
        date = (date or "").strip()
        if not name:
            raise ValidationError("Race name is required")
        if not date:
            raise ValidationError("Race date is required")
        try:
            datetime.strptime(date, "%Y-%m-%d")
        except ValueError:
            raise ValidationError(f"Invalid race date '{date}'. Expected YYYY-MM-DD.")

        rows = self.store.insert(
            "race_events",
            {"name": name, "date": date, "status": PENDING, "finish_seq": 0},
        )
        race = dict(rows[0])
        self._reset_projection(race)
        logger.info("create_race race=%s name=%r date=%s", race.get("id"), name, date)
        return dict(race)

    def select_race(self, race_id: Any) -> Dict[str, Any]:
        """Load a race with its assigned runners and persisted finishes."""
        race_id = _as_id(race_id, "race")
        rows = self.store.select("race_events", {"id": race_id})
        if not rows:
            raise RaceNotFoundError(f"Race {race_id} not found")
        race = dict(rows[0])

        assignments = self.store.select("runner_races", {"race_id": race_id})
        runner_ids = [a["runner_id"] for a in assignments]
        runners = self.store.select("runners", {"id": runner_ids}, order="name") if runner_ids else []

        self._reset_projection(race)
        self.runners = {int(r["id"]): dict(r) for r in runners}
        finished = [r for r in self.runners.values() if r.get("finish_time")]
        finished.sort(key=_arrival_sort_key)
        self.finish_order = finished
        return dict(race)

    def refresh(self) -> Dict[str, Any]:
        race = self._require_race()
        return self.select_race(race["id"])

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def set_status(self, new_status: str) -> Dict[str, Any]:
        race = self._require_race()
        if new_status not in STATUSES:
            raise ValidationError(f"Unknown race status '{new_status}'. Expected one of: {', '.join(STATUSES)}")
        current = race.get("status")
        if TRANSITIONS.get(current) != new_status:
            logger.warning(
                "rejected status transition race=%s from=%s to=%s",
                race.get("id"), current, new_status,
            )
            raise InvalidTransitionError(f"Cannot change race status from {current} to {new_status}")

        race["status"] = new_status
        try:
            self.store.update("race_events", {"status": new_status}, {"id": race["id"]})
        except GatewayError:
            race["status"] = current
            raise
        logger.info("set_status race=%s from=%s to=%s", race["id"], current, new_status)
        return dict(race)

    def start(self) -> Dict[str, Any]:
        return self.set_status(ACTIVE)

    def stop(self) -> Dict[str, Any]:
        return self.set_status(COMPLETED)

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    def assign_runners(self, runner_ids: Iterable[Any]) -> List[int]:
        """Assign runners to the current race, skipping existing assignments."""
        race = self._require_race()
        ids = list(dict.fromkeys(_as_id(i, "runner") for i in (runner_ids or [])))
        if not ids:
            raise ValidationError("Select at least one runner to assign")

        known = {int(r["id"]) for r in self.store.select("runners", {"id": ids})}
        missing = [i for i in ids if i not in known]
        if missing:
            raise RunnerNotFoundError(f"Unknown runner ids: {', '.join(str(i) for i in missing)}")

        existing = {
            int(a["runner_id"])
            for a in self.store.select("runner_races", {"race_id": race["id"], "runner_id": ids})
        }
        to_assign = [i for i in ids if i not in existing]
        if not to_assign:
            raise ValidationError("All selected runners are already assigned to this race")

        self.store.insert("runner_races", [{"runner_id": i, "race_id": race["id"]} for i in to_assign])
        logger.info("assign_runners race=%s assigned=%d skipped=%d", race["id"], len(to_assign), len(existing))
        self.refresh()
        return to_assign

    # ------------------------------------------------------------------
    # Finish order
    # ------------------------------------------------------------------

    def _compensate_seq(self, race: Dict[str, Any], amount: int) -> None:
        try:
            self.store.increment("race_events", "finish_seq", {"id": race["id"]}, amount=amount)
        except GatewayError:
            logger.exception("finish_seq compensation failed race=%s amount=%d", race["id"], amount)

    def record_finish(self, runner_id: Any, minutes: Any, seconds: Any, manual_position: Any = None) -> Dict[str, Any]:
        """Record a runner crossing the line.

        The position is the operator's ``manual_position`` when it is a
        positive integer, otherwise the next value of the race's finish
        sequence.  A manual position already held by another finisher is
        rejected.
        """
        race = self._require_race()
        if race.get("status") not in (PENDING, ACTIVE):
            raise InvalidTransitionError(f"Race {race.get('id')} is {race.get('status')}; finishes can no longer be recorded")
        runner_id = _as_id(runner_id, "runner")
        runner = self.runners.get(runner_id)
        if runner is None:
            raise RunnerNotFoundError(f"Runner {runner_id} is not assigned to race {race.get('id')}")
        if runner.get("finish_time"):
            raise DuplicateFinishError(f"Runner {runner_id} already finished at position {runner.get('position')}")

        running_time = _parse_duration(minutes, seconds)
        manual = _manual_position(manual_position)
        if manual is not None and any(r.get("position") == manual for r in self.finish_order):
            raise ValidationError(f"Position {manual} is already taken")

        expected_seq = int(race.get("finish_seq") or 0) + 1
        seq = self.store.increment("race_events", "finish_seq", {"id": race["id"]})
        if seq is None:
            raise RaceNotFoundError(f"Race {race['id']} not found")
        position = manual if manual is not None else seq

        patch = {
            "finish_time": self._clock(),
            "position": position,
            "running_time_seconds": running_time,
            "arrival_seq": seq,
        }
        before = {k: runner.get(k) for k in _FINISH_FIELDS}
        runner.update(patch)
        self.finish_order.append(runner)
        try:
            self.store.update("runners", patch, {"id": runner_id})
        except GatewayError:
            runner.update(before)
            self.finish_order.pop()
            self._compensate_seq(race, -1)
            raise
        race["finish_seq"] = seq
        logger.info(
            "record_finish race=%s runner=%s position=%s time=%s",
            race["id"], runner_id, position, running_time,
        )
        if seq != expected_seq:
            # Another session recorded finishes in between; pick them up.
            logger.info("finish_seq moved concurrently race=%s expected=%d got=%d", race["id"], expected_seq, seq)
            self.refresh()
            runner = self.runners.get(runner_id, runner)
        return dict(runner)

    def undo_last_finish(self) -> Dict[str, Any]:
        """Remove the most recent finish and clear the runner's result."""
        race = self._require_race()
        if not self.finish_order:
            raise EmptyLedgerError("No finishes to undo")

        local_seq = int(race.get("finish_seq") or 0)
        seq = self.store.increment(
            "race_events", "finish_seq", {"id": race["id"], "finish_seq": local_seq}, amount=-1
        )
        if seq is None:
            raise ConcurrentModificationError(
                "The finish order was changed from another session; refresh and try again"
            )

        runner = self.finish_order.pop()
        before = {k: runner.get(k) for k in _FINISH_FIELDS}
        cleared = {k: None for k in _FINISH_FIELDS}
        runner.update(cleared)
        try:
            self.store.update("runners", cleared, {"id": runner["id"]})
        except GatewayError:
            runner.update(before)
            self.finish_order.append(runner)
            self._compensate_seq(race, 1)
            raise
        race["finish_seq"] = seq
        logger.info("undo_last_finish race=%s runner=%s position=%s", race["id"], runner["id"], before["position"])
        return dict(runner)

    def results(self) -> List[Dict[str, Any]]:
        """Finished runners in position order."""
        placed = [r for r in self.finish_order if r.get("position") is not None]
        placed.sort(key=_finish_sort_key)
        return [dict(r) for r in placed]

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def calculate_house_points(self) -> Dict[str, int]:
        """Award house points for the current finish order.

        Appends one house points entry per house that scored, tagged with
        the race id, and records the award in the admin log. A race whose
        points are already in the ledger is refused.
        """
        race = self._require_race()
        if self.store.select("house_points", {"race_id": race["id"]}, limit=1):
            raise PointsAlreadyAwardedError(f"House points for race {race['id']} have already been awarded")
        points = scoring.calculate_house_points(self.finish_order)
        entries = [
            {"house": house, "points": pts, "race_id": race["id"]}
            for house, pts in points.items()
            if pts
        ]
        if entries:
            self.store.insert("house_points", entries)
        log_admin_action(
            POINT_CALCULATION,
            {
                "race_id": race["id"],
                "race_name": race.get("name"),
                "points_awarded": points,
                "total_runners": len(self.results()),
            },
            actor=self.actor,
            store=self.store,
        )
        logger.info("calculate_house_points race=%s entries=%d", race["id"], len(entries))
        return points

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view of the projection for rendering."""
        return {
            "race": dict(self.current_race) if self.current_race else None,
            "runners": [dict(r) for r in sorted(self.runners.values(), key=lambda r: r.get("name") or "")],
            "finish_order": [dict(r) for r in self.finish_order],
        }
