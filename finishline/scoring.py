"""House scoring for cross country races."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .errors import UnknownHouseError

HOUSES = ("Broughton", "Abbott", "Croft", "Tyrrell", "Green", "Ross")

# Only the top finishers score: 1st earns 10 points down to 10th earning 1.
SCORING_PLACES = 10


def _empty_points() -> Dict[str, int]:
    return {house: 0 for house in HOUSES}


def validate_house(house: Optional[str]) -> str:
    """Return ``house`` if it is one of the six houses, else raise."""
    if house not in HOUSES:
        raise UnknownHouseError(f"Unknown house '{house}'. Expected one of: {', '.join(HOUSES)}")
    return house


def calculate_house_points(finish_order: Iterable[Dict]) -> Dict[str, int]:
    """Convert finishing positions into per-house points for one race.

    Entries without a ``position`` are ignored; the rest are ranked by
    position.  Position order alone decides the score, so two runners with
    the same running time still score by position.  Runners with no house
    are skipped.

    Returns:
        Mapping of every house to its points from this race.
    """
    placed: List[Dict] = [r for r in finish_order if r.get("position") is not None]
    placed.sort(key=lambda r: int(r["position"]))

    points = _empty_points()
    for index, runner in enumerate(placed[:SCORING_PLACES]):
        house = runner.get("house")
        if not house:
            continue
        points[validate_house(house)] += SCORING_PLACES - index
    return points


def house_totals(entries: Iterable[Dict]) -> Dict[str, int]:
    """Sum house points ledger entries per house."""
    totals = _empty_points()
    for entry in entries:
        house = entry.get("house")
        if house in totals:
            totals[house] += int(entry.get("points") or 0)
    return totals


def format_running_time(seconds: Optional[int]) -> str:
    if seconds is None:
        return "-"
    minutes, remainder = divmod(int(seconds), 60)
    return f"{minutes}:{remainder:02d}"


__all__ = [
    "HOUSES",
    "SCORING_PLACES",
    "validate_house",
    "calculate_house_points",
    "house_totals",
    "format_running_time",
]
