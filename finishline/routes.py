from flask import Blueprint, current_app, jsonify, request

from . import admin_log, datastore, runners as runner_roster
from .errors import FinishLineError, ValidationError
from .house_points import HousePointsLedger
from .platform_status import get_platform_status, set_platform_status
from .race_ledger import RaceLedger
from .scoring import calculate_house_points, format_running_time


bp = Blueprint('main', __name__)

_COMMAND_METHODS = ('POST', 'PUT', 'DELETE')
_ALWAYS_OPEN = ('/api/platform-status',)


def _actor():
    return request.headers.get('X-Actor') or admin_log.default_actor()


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    return data


def _ledger(race_id=None) -> RaceLedger:
    # A fresh projection per request; the gateway is the only shared state.
    ledger = RaceLedger(store=datastore, actor=_actor())
    if race_id is not None:
        ledger.select_race(race_id)
    return ledger


def _house_points() -> HousePointsLedger:
    return HousePointsLedger(store=datastore, actor=_actor())


def _with_display_time(runner: dict) -> dict:
    return {**runner, 'running_time': format_running_time(runner.get('running_time_seconds'))}


@bp.errorhandler(FinishLineError)
def handle_command_error(exc: FinishLineError):
    if exc.status_code >= 500:
        current_app.logger.error('command failed kind=%s path=%s: %s', exc.kind, request.path, exc)
    else:
        current_app.logger.info('command rejected kind=%s path=%s: %s', exc.kind, request.path, exc)
    return jsonify({'error': exc.kind, 'message': str(exc)}), exc.status_code


@bp.before_request
def refuse_when_disabled():
    if request.method not in _COMMAND_METHODS or not request.path.startswith('/api/'):
        return None
    if request.path in _ALWAYS_OPEN:
        return None
    platform = current_app.config.get('FINISHLINE_PLATFORM', 'cross-country')
    status = get_platform_status(platform)
    if status['status'] == 'disabled':
        return jsonify({'error': 'PlatformDisabled', 'message': status['message']}), 503
    return None


@bp.route('/health/db')
def health_db():
    """Gateway connectivity check; always HTTP 200 with a status body."""
    try:
        datastore.select('platform_status', None, limit=1)
    except FinishLineError as exc:
        return {'connected': False, 'status': 'error', 'error': str(exc)}
    return {'connected': True, 'status': 'ok'}


# ---------------------------------------------------------------------------
# Races
# ---------------------------------------------------------------------------

@bp.route('/api/races', methods=['GET'])
def list_races():
    return jsonify({'races': _ledger().list_races()})


@bp.route('/api/races', methods=['POST'])
def create_race():
    data = _payload()
    ledger = _ledger()
    race = ledger.create_race(data.get('name'), data.get('date'))
    return jsonify({'race': race}), 201


@bp.route('/api/races/<int:race_id>', methods=['GET'])
def race_detail(race_id):
    ledger = _ledger(race_id)
    snap = ledger.snapshot()
    snap['finish_order'] = [_with_display_time(r) for r in snap['finish_order']]
    snap['next_position'] = len(ledger.finish_order) + 1
    return jsonify(snap)


@bp.route('/api/races/<int:race_id>/status', methods=['POST'])
def race_status(race_id):
    data = _payload()
    race = _ledger(race_id).set_status(data.get('status'))
    return jsonify({'race': race})


@bp.route('/api/races/<int:race_id>/runners', methods=['POST'])
def assign_runners(race_id):
    data = _payload()
    assigned = _ledger(race_id).assign_runners(data.get('runner_ids') or [])
    return jsonify({'assigned': assigned})


@bp.route('/api/races/<int:race_id>/finishes', methods=['POST'])
def record_finish(race_id):
    data = _payload()
    ledger = _ledger(race_id)
    runner = ledger.record_finish(
        data.get('runner_id'),
        data.get('minutes'),
        data.get('seconds'),
        data.get('position'),
    )
    return jsonify({'runner': _with_display_time(runner), 'finishers': len(ledger.finish_order)}), 201


@bp.route('/api/races/<int:race_id>/finishes/last', methods=['DELETE'])
def undo_last_finish(race_id):
    ledger = _ledger(race_id)
    runner = ledger.undo_last_finish()
    return jsonify({'runner': runner, 'finishers': len(ledger.finish_order)})


@bp.route('/api/races/<int:race_id>/house-points', methods=['POST'])
def award_house_points(race_id):
    points = _ledger(race_id).calculate_house_points()
    return jsonify({'points': points})


@bp.route('/api/races/<int:race_id>/results', methods=['GET'])
def race_results(race_id):
    ledger = _ledger(race_id)
    results = ledger.results()
    return jsonify({
        'race': ledger.current_race,
        'results': [_with_display_time(r) for r in results],
        'house_points': calculate_house_points(results),
    })


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

@bp.route('/api/runners', methods=['GET'])
def list_runners():
    return jsonify({'runners': runner_roster.list_runners(request.args.get('age_group'))})


@bp.route('/api/runners', methods=['POST'])
def add_runner():
    return jsonify({'runner': runner_roster.add_runner(_payload())}), 201


@bp.route('/api/runners/import', methods=['POST'])
def import_runners():
    upload = request.files.get('file')
    text = upload.read().decode('utf-8-sig') if upload else request.get_data(as_text=True)
    inserted = runner_roster.import_runners(text)
    return jsonify({'imported': len(inserted), 'runners': inserted}), 201


@bp.route('/api/runners', methods=['DELETE'])
def delete_runners():
    deleted = runner_roster.delete_runners(_payload().get('runner_ids') or [])
    return jsonify({'deleted': deleted})


# ---------------------------------------------------------------------------
# House points
# ---------------------------------------------------------------------------

@bp.route('/api/house-points', methods=['GET'])
def house_points():
    ledger = _house_points()
    return jsonify({'totals': ledger.totals(), 'recent': ledger.recent()})


@bp.route('/api/house-points/quick', methods=['POST'])
def quick_point():
    ledger = _house_points()
    entry = ledger.add_quick_point(_payload().get('house'))
    return jsonify({'entry': entry, 'totals': ledger.totals()}), 201


@bp.route('/api/house-points/reset', methods=['POST'])
def reset_points():
    backup = _house_points().reset_all_points()
    return jsonify({'backup': backup})


@bp.route('/api/house-points/backup', methods=['GET'])
def list_backups():
    return jsonify({'backups': _house_points().list_backups()})


@bp.route('/api/house-points/backup', methods=['POST'])
def create_backup():
    payload = _house_points().backup()
    return current_app.response_class(
        payload,
        status=201,
        mimetype='application/json',
        headers={'Content-Disposition': 'attachment; filename=house-points-backup.json'},
    )


@bp.route('/api/house-points/restore', methods=['POST'])
def restore_points():
    upload = request.files.get('file')
    text = upload.read().decode('utf-8-sig') if upload else request.get_data(as_text=True)
    totals = _house_points().restore(text)
    return jsonify({'totals': totals})


@bp.route('/api/admin/logs', methods=['GET'])
def admin_logs():
    try:
        limit = int(request.args.get('limit', 50))
    except ValueError:
        raise ValidationError('limit must be an integer')
    return jsonify({'logs': admin_log.list_admin_logs(limit=limit)})


@bp.route('/api/platform-status', methods=['GET'])
def platform_status():
    platform = current_app.config.get('FINISHLINE_PLATFORM', 'cross-country')
    return jsonify({'platform': platform, **get_platform_status(platform)})


@bp.route('/api/platform-status', methods=['POST'])
def change_platform_status():
    data = _payload()
    platform = current_app.config.get('FINISHLINE_PLATFORM', 'cross-country')
    status = set_platform_status(platform, data.get('status'), data.get('message'), updated_by=_actor())
    return jsonify({'platform': platform, **status})
