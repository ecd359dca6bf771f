import json
import logging

import pytest

from finishline.errors import (
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
from finishline.race_ledger import RaceLedger
from finishline.scoring import house_totals


@pytest.fixture()
def ledger():
    return RaceLedger(clock=lambda: "2025-05-01T09:30:00+00:00")


@pytest.fixture()
def active_race(ledger, memory_db):
    race = ledger.create_race("Junior Boys 3km", "2025-05-01")
    runners = [
        memory_db.seed_runner("Ava", "Abbott", race_id=race["id"]),
        memory_db.seed_runner("Ben", "Broughton", race_id=race["id"]),
        memory_db.seed_runner("Cal", "Abbott", race_id=race["id"]),
        memory_db.seed_runner("Dee", "Croft", race_id=race["id"]),
    ]
    ledger.select_race(race["id"])
    return race, runners


def test_create_race_starts_pending_and_clears_projection(ledger, active_race):
    race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)

    new_race = ledger.create_race("Senior Girls 4km", "2025-05-02")

    assert new_race["status"] == "pending"
    assert ledger.current_race["id"] == new_race["id"]
    assert ledger.runners == {}
    assert ledger.finish_order == []


@pytest.mark.parametrize("name,date", [("", "2025-05-01"), ("   ", "2025-05-01"), ("Race", ""), ("Race", None), ("Race", "01/05/2025")])
def test_create_race_validates_name_and_date(ledger, memory_db, name, date):
    with pytest.raises(ValidationError):
        ledger.create_race(name, date)
    assert memory_db.rows("race_events") == []


def test_select_unknown_race(ledger):
    with pytest.raises(RaceNotFoundError):
        ledger.select_race(99)


def test_status_moves_forward_only(ledger, memory_db):
    race = ledger.create_race("Relay", "2025-05-01")
    ledger.start()
    assert memory_db.rows("race_events")[0]["status"] == "active"
    ledger.stop()
    assert memory_db.rows("race_events")[0]["status"] == "completed"

    with pytest.raises(InvalidTransitionError):
        ledger.set_status("active")
    assert ledger.current_race["status"] == "completed"


def test_status_cannot_skip_or_repeat(ledger, caplog):
    ledger.create_race("Relay", "2025-05-01")
    caplog.set_level(logging.WARNING)
    with pytest.raises(InvalidTransitionError):
        ledger.set_status("completed")
    with pytest.raises(InvalidTransitionError):
        ledger.set_status("pending")
    assert any("rejected status transition" in r.getMessage() for r in caplog.records)


def test_status_requires_selected_race(ledger):
    with pytest.raises(InvalidTransitionError):
        ledger.set_status("active")


def test_unknown_status_value(ledger):
    ledger.create_race("Relay", "2025-05-01")
    with pytest.raises(ValidationError):
        ledger.set_status("paused")


def test_status_rolls_back_when_gateway_fails(ledger, memory_db):
    ledger.create_race("Relay", "2025-05-01")
    memory_db.fail_on.add(("update", "race_events"))
    with pytest.raises(GatewayError):
        ledger.start()
    assert ledger.current_race["status"] == "pending"


def test_sequential_finishes_get_sequential_positions(ledger, active_race, memory_db):
    _race, runners = active_race
    for expected, runner in enumerate(runners, start=1):
        recorded = ledger.record_finish(runner["id"], 12, expected)
        assert recorded["position"] == expected
    assert [r["position"] for r in ledger.finish_order] == [1, 2, 3, 4]
    stored = {r["id"]: r for r in memory_db.rows("runners")}
    assert [stored[r["id"]]["position"] for r in runners] == [1, 2, 3, 4]


def test_record_finish_computes_running_time_and_stamps_finish(ledger, active_race, memory_db):
    _race, runners = active_race
    recorded = ledger.record_finish(runners[0]["id"], 11, 42)
    assert recorded["running_time_seconds"] == 11 * 60 + 42
    assert recorded["finish_time"] == "2025-05-01T09:30:00+00:00"
    stored = memory_db.rows("runners")[0]
    assert stored["running_time_seconds"] == 702
    assert stored["finish_time"] == "2025-05-01T09:30:00+00:00"


def test_blank_time_counts_as_zero(ledger, active_race):
    _race, runners = active_race
    recorded = ledger.record_finish(runners[0]["id"], "", None)
    assert recorded["running_time_seconds"] == 0


@pytest.mark.parametrize("minutes,seconds", [(-1, 0), (5, 60), ("ten", 0), (5, -3)])
def test_invalid_running_time(ledger, active_race, minutes, seconds):
    _race, runners = active_race
    with pytest.raises(ValidationError):
        ledger.record_finish(runners[0]["id"], minutes, seconds)
    assert ledger.finish_order == []


def test_duplicate_finish_rejected(ledger, active_race):
    _race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    with pytest.raises(DuplicateFinishError):
        ledger.record_finish(runners[0]["id"], 11, 0)
    assert len(ledger.finish_order) == 1


def test_unassigned_runner_rejected(ledger, active_race, memory_db):
    outsider = memory_db.seed_runner("Zed", "Ross")
    with pytest.raises(RunnerNotFoundError):
        ledger.record_finish(outsider["id"], 10, 0)


def test_record_finish_requires_open_race(ledger, active_race):
    _race, runners = active_race
    ledger.start()
    ledger.stop()
    with pytest.raises(InvalidTransitionError):
        ledger.record_finish(runners[0]["id"], 10, 0)


def test_manual_position_overrides_sequence(ledger, active_race):
    _race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    recorded = ledger.record_finish(runners[1]["id"], 10, 5, manual_position=5)
    assert recorded["position"] == 5
    # non-positive placement falls back to the next position
    recorded = ledger.record_finish(runners[2]["id"], 10, 9, manual_position=0)
    assert recorded["position"] == 3


def test_manual_position_collision_rejected(ledger, active_race):
    _race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    with pytest.raises(ValidationError):
        ledger.record_finish(runners[1]["id"], 10, 5, manual_position=1)
    assert len(ledger.finish_order) == 1
    assert ledger.runners[runners[1]["id"]]["finish_time"] is None


def test_record_finish_rolls_back_on_gateway_failure(ledger, active_race, memory_db):
    race, runners = active_race
    memory_db.fail_on.add(("update", "runners"))
    with pytest.raises(GatewayError):
        ledger.record_finish(runners[0]["id"], 10, 0)
    assert ledger.finish_order == []
    assert ledger.runners[runners[0]["id"]]["position"] is None
    # the sequence handed out for the failed write is given back
    assert memory_db.rows("race_events")[0]["finish_seq"] == 0

    memory_db.fail_on.clear()
    assert ledger.record_finish(runners[0]["id"], 10, 0)["position"] == 1


def test_undo_reverts_last_finish(ledger, active_race, memory_db):
    _race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    ledger.record_finish(runners[1]["id"], 10, 30)

    undone = ledger.undo_last_finish()

    assert undone["id"] == runners[1]["id"]
    assert len(ledger.finish_order) == 1
    stored = {r["id"]: r for r in memory_db.rows("runners")}[runners[1]["id"]]
    assert stored["finish_time"] is None
    assert stored["position"] is None
    assert stored["running_time_seconds"] is None
    # the next finish takes the freed position
    assert ledger.record_finish(runners[2]["id"], 11, 0)["position"] == 2


def test_undo_with_nothing_recorded(ledger, active_race):
    with pytest.raises(EmptyLedgerError):
        ledger.undo_last_finish()


def test_undo_rolls_back_on_gateway_failure(ledger, active_race, memory_db):
    _race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    memory_db.fail_on.add(("update", "runners"))
    with pytest.raises(GatewayError):
        ledger.undo_last_finish()
    assert len(ledger.finish_order) == 1
    assert ledger.finish_order[0]["position"] == 1
    assert memory_db.rows("race_events")[0]["finish_seq"] == 1


def test_select_race_rebuilds_finish_order_from_gateway(ledger, active_race):
    race, runners = active_race
    ledger.record_finish(runners[2]["id"], 10, 0)
    ledger.record_finish(runners[0]["id"], 10, 10)

    other = RaceLedger()
    other.select_race(race["id"])

    assert [r["id"] for r in other.finish_order] == [runners[2]["id"], runners[0]["id"]]
    assert other.current_race["finish_seq"] == 2


def test_two_sessions_never_share_an_automatic_position(active_race, ledger):
    race, runners = active_race
    second = RaceLedger()
    second.select_race(race["id"])

    first_pos = ledger.record_finish(runners[0]["id"], 10, 0)["position"]
    second_pos = second.record_finish(runners[1]["id"], 10, 5)["position"]

    assert {first_pos, second_pos} == {1, 2}
    # the second session picked up the first session's finish
    assert [r["id"] for r in second.finish_order] == [runners[0]["id"], runners[1]["id"]]


def test_undo_refused_when_another_session_recorded(active_race, ledger):
    race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    second = RaceLedger()
    second.select_race(race["id"])
    second.record_finish(runners[1]["id"], 10, 5)

    with pytest.raises(ConcurrentModificationError):
        ledger.undo_last_finish()
    assert len(ledger.finish_order) == 1


def test_assign_runners_skips_existing(ledger, memory_db):
    race = ledger.create_race("Relay", "2025-05-01")
    a = memory_db.seed_runner("Ava", "Abbott", race_id=race["id"])
    b = memory_db.seed_runner("Ben", "Green")

    assigned = ledger.assign_runners([a["id"], b["id"]])

    assert assigned == [b["id"]]
    assert set(ledger.runners) == {a["id"], b["id"]}
    with pytest.raises(ValidationError):
        ledger.assign_runners([a["id"], b["id"]])
    with pytest.raises(RunnerNotFoundError):
        ledger.assign_runners([999])


def test_end_to_end_junior_boys_scoring(ledger, memory_db):
    race = ledger.create_race("Junior Boys 3km", "2025-05-01")
    a = memory_db.seed_runner("A", "Abbott", race_id=race["id"])
    b = memory_db.seed_runner("B", "Broughton", race_id=race["id"])
    c = memory_db.seed_runner("C", "Abbott", race_id=race["id"])
    ledger.select_race(race["id"])
    ledger.start()

    for runner in (a, b, c):
        ledger.record_finish(runner["id"], 12, 0)
    assert [(r["name"], r["position"]) for r in ledger.finish_order] == [("A", 1), ("B", 2), ("C", 3)]

    ledger.stop()
    points = ledger.calculate_house_points()

    assert points["Abbott"] == 18
    assert points["Broughton"] == 9
    totals = house_totals(memory_db.rows("house_points"))
    assert totals["Abbott"] == 18
    assert totals["Broughton"] == 9
    assert all(e["race_id"] == race["id"] for e in memory_db.rows("house_points"))

    log = memory_db.rows("admin_logs")[-1]
    assert log["action"] == "calculate_house_points"
    details = json.loads(log["details"])
    assert details["points_awarded"]["Abbott"] == 18
    assert details["total_runners"] == 3


def test_calculate_house_points_writes_only_scoring_houses(ledger, active_race, memory_db):
    _race, runners = active_race
    ledger.record_finish(runners[3]["id"], 10, 0)
    ledger.calculate_house_points()
    assert [(e["house"], e["points"]) for e in memory_db.rows("house_points")] == [("Croft", 10)]


def test_undo_after_reload_clears_most_recent_not_highest_position(ledger, active_race):
    race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0, manual_position=3)
    ledger.record_finish(runners[1]["id"], 10, 5)

    fresh = RaceLedger()
    fresh.select_race(race["id"])
    assert [r["id"] for r in fresh.finish_order] == [runners[0]["id"], runners[1]["id"]]

    undone = fresh.undo_last_finish()

    assert undone["id"] == runners[1]["id"]
    assert fresh.runners[runners[0]["id"]]["position"] == 3
    # results still rank by position
    assert [r["id"] for r in fresh.results()] == [runners[0]["id"]]


def test_house_points_awarded_once_per_race(ledger, active_race, memory_db):
    _race, runners = active_race
    ledger.record_finish(runners[0]["id"], 10, 0)
    ledger.calculate_house_points()

    with pytest.raises(PointsAlreadyAwardedError):
        ledger.calculate_house_points()

    assert house_totals(memory_db.rows("house_points"))["Abbott"] == 10
