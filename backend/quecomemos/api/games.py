from flask import Blueprint, jsonify

from quecomemos.api import json_body, optional_bool, optional_int, paging, require_int
from quecomemos.services import get_services

games = Blueprint('games', __name__)


@games.route('/sessions', methods=['POST'])
def create_session():
    data = json_body()
    session = get_services().games.create_game_session(
        group_id=require_int(data, 'group_id'),
        host_id=require_int(data, 'host_id'),
        game_type=data.get('game_type'),
        duration=optional_int(data, 'duration'),
        min_players=optional_int(data, 'min_players'),
    )
    return jsonify(session.to_dict()), 201


@games.route('/sessions/<int:session_id>', methods=['GET'])
def get_session(session_id):
    return jsonify(get_services().games.get_game_session(session_id).to_dict())


@games.route('/groups/<int:group_id>/active', methods=['GET'])
def active_session(group_id):
    session = get_services().games.get_active_game_session(group_id)
    return jsonify(session.to_dict() if session else None)


@games.route('/groups/<int:group_id>/history', methods=['GET'])
def group_history(group_id):
    limit, offset = paging()
    return jsonify(get_services().games.get_group_history(group_id, limit=limit, offset=offset))


@games.route('/sessions/<int:session_id>/join', methods=['POST'])
def join(session_id):
    data = json_body()
    participant = get_services().games.join_game_session(
        session_id, require_int(data, 'profile_id'), optional_int(data, 'meal_id')
    )
    return jsonify(participant.to_dict())


@games.route('/sessions/<int:session_id>/ready', methods=['POST'])
def ready(session_id):
    data = json_body()
    is_ready = optional_bool(data, 'is_ready', True)
    session = get_services().games.mark_player_ready(session_id, require_int(data, 'profile_id'), is_ready)
    return jsonify(session.to_dict())


@games.route('/sessions/<int:session_id>/countdown', methods=['POST'])
def countdown(session_id):
    host_id = require_int(json_body(), 'host_id')
    return jsonify(get_services().games.start_game_countdown(session_id, host_id).to_dict())


@games.route('/sessions/<int:session_id>/play', methods=['POST'])
def play(session_id):
    return jsonify(get_services().games.start_game_playing(session_id).to_dict())


@games.route('/sessions/<int:session_id>/end', methods=['POST'])
def end(session_id):
    return jsonify(get_services().games.end_game_time(session_id).to_dict())


@games.route('/sessions/<int:session_id>/clicks', methods=['POST'])
def submit_clicks(session_id):
    data = json_body()
    participant = get_services().games.submit_click_count(
        session_id, require_int(data, 'profile_id'), data.get('click_count')
    )
    session = get_services().games.get_game_session(session_id)
    return jsonify({'participant': participant.to_dict(), 'session': session.to_dict()})


@games.route('/sessions/<int:session_id>/force-complete', methods=['POST'])
def force_complete(session_id):
    host_id = require_int(json_body(), 'host_id')
    return jsonify(get_services().games.force_complete_game(session_id, host_id).to_dict())


@games.route('/sessions/<int:session_id>/roulette/preview', methods=['POST'])
def roulette_preview(session_id):
    host_id = require_int(json_body(), 'host_id')
    return jsonify(get_services().games.determine_roulette_winner(session_id, host_id))


@games.route('/sessions/<int:session_id>/roulette/spin', methods=['POST'])
def roulette_spin(session_id):
    data = json_body()
    session = get_services().games.complete_roulette(
        session_id, require_int(data, 'host_id'), optional_int(data, 'winner_profile_id')
    )
    return jsonify(session.to_dict())


@games.route('/sessions/<int:session_id>/cancel', methods=['POST'])
def cancel(session_id):
    host_id = require_int(json_body(), 'host_id')
    return jsonify(get_services().games.cancel_game_session(session_id, host_id).to_dict())
