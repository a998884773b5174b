from datetime import datetime

from flask import Blueprint, jsonify, request

from quecomemos.api import json_body, require_int, to_int
from quecomemos.errors import ValidationError
from quecomemos.services import get_services

consumptions = Blueprint('consumptions', __name__)


def _parse_time(name):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw.rstrip('Z'))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp")
    return value.replace(tzinfo=None)


@consumptions.route('/voting/<int:session_id>/portion', methods=['POST'])
def select_voting_portion(session_id):
    data = json_body()
    record = get_services().linker.select_portion(
        session_id,
        require_int(data, 'user_id'),
        data.get('portion_fraction', 1.0),
        data.get('food_portions') or [],
    )
    return jsonify(record.to_dict())


@consumptions.route('/games/<int:session_id>/portion', methods=['POST'])
def select_game_portion(session_id):
    data = json_body()
    record = get_services().linker.select_game_portion(
        session_id,
        require_int(data, 'profile_id'),
        data.get('portion_fraction', 1.0),
        data.get('food_portions') or [],
    )
    return jsonify(record.to_dict())


@consumptions.route('/voting/<int:session_id>/participants/<int:user_id>', methods=['GET'])
def participant_status(session_id, user_id):
    return jsonify(get_services().linker.get_participant_status(session_id, user_id))


@consumptions.route('/voting/<int:session_id>/default-expired', methods=['POST'])
def default_expired(session_id):
    records = get_services().linker.default_expired_participants(session_id)
    return jsonify({'defaulted': [r.to_dict() for r in records]})


@consumptions.route('/profiles/<int:profile_id>/history', methods=['GET'])
def personal_history(profile_id):
    limit = to_int(request.args.get('limit', 50), 'limit')
    records = get_services().linker.personal_history(profile_id, limit=max(1, min(limit, 200)))
    return jsonify([r.to_dict() for r in records])


@consumptions.route('/profiles/<int:profile_id>/kcal', methods=['GET'])
def personal_kcal(profile_id):
    since, until = _parse_time('since'), _parse_time('until')
    total = get_services().linker.personal_kcal_total(profile_id, since=since, until=until)
    return jsonify({'profile_id': profile_id, 'total_kcal': total})
