from flask import Blueprint, current_app, jsonify, request

from queue_errors import ValidationError
from queue_notify import NOTIFICATION_TYPES, UNKNOWN_RUNNER
from queue_requests import (
    AdvanceRequest,
    EditRosterRequest,
    StartRequest,
    StatusUpdateRequest,
    StopRequest,
    parse_request,
)
from shared.auth_lib import auth_required, current_identity

queue_bp = Blueprint('queue_bp', __name__, url_prefix='/api/queue')


def _queue_manager():
    return current_app.extensions['queue_manager']


def _history_manager():
    return current_app.extensions['queue_history']


def _payload():
    return request.get_json(silent=True)


@queue_bp.route('/status', methods=['GET'])
@auth_required
def get_queue_status():
    """Live state polled by every viewer."""
    return jsonify(_queue_manager().get_status())


@queue_bp.route('/status', methods=['POST'])
@auth_required
def update_queue_status():
    """Full state push from the runner's client: isRunning false stops, true starts or replaces."""
    update = parse_request(StatusUpdateRequest, _payload())
    return jsonify(_queue_manager().apply_status_update(current_identity(), update))


@queue_bp.route('/start', methods=['POST'])
@auth_required
def start_queue():
    start_request = parse_request(StartRequest, _payload())
    status = _queue_manager().start(current_identity(), start_request)
    return jsonify({"success": True, "queueStatus": status})


@queue_bp.route('/stop', methods=['POST'])
@auth_required
def stop_queue():
    stop_request = parse_request(StopRequest, _payload())
    return jsonify(_queue_manager().stop(current_identity(), stop_request))


@queue_bp.route('/advance', methods=['POST'])
@auth_required
def advance_queue():
    status = _queue_manager().step(current_identity(), AdvanceRequest(direction='next'))
    return jsonify({"success": True, "queueStatus": status})


@queue_bp.route('/retreat', methods=['POST'])
@auth_required
def retreat_queue():
    status = _queue_manager().step(current_identity(), AdvanceRequest(direction='previous'))
    return jsonify({"success": True, "queueStatus": status})


@queue_bp.route('/roster', methods=['PUT'])
@auth_required
def edit_queue_roster():
    edit_request = parse_request(EditRosterRequest, _payload())
    status = _queue_manager().edit_roster(current_identity(), edit_request)
    return jsonify({"success": True, "queueStatus": status})


@queue_bp.route('/history', methods=['GET'])
@auth_required
def queue_history():
    return jsonify(_history_manager().list_sessions(request.args))


@queue_bp.route('/analytics', methods=['GET'])
@auth_required
def queue_analytics():
    return jsonify(_history_manager().analytics(request.args))


@queue_bp.route('/notify', methods=['POST'])
@auth_required
def queue_notify():
    payload = _payload()
    if not isinstance(payload, dict):
        raise ValidationError("expected JSON payload")
    event_type = payload.get('type')
    if event_type not in NOTIFICATION_TYPES:
        raise ValidationError("Invalid notification type")
    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
    identity = current_identity()
    data = dict(data, runnerName=identity.name or data.get('runnerName') or UNKNOWN_RUNNER)
    notifier = current_app.extensions['queue_notifier']
    message_id = notifier.notify(event_type, data, payload.get('messageId'))
    return jsonify({"success": True, "messageId": message_id})
