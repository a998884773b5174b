from flask import Blueprint, jsonify

from quecomemos.api import json_body, paging, require_int
from quecomemos.services import get_services

voting = Blueprint('voting', __name__)


@voting.route('/sessions', methods=['POST'])
def start_session():
    data = json_body()
    session = get_services().voting.start_voting_session(
        initiator_id=require_int(data, 'initiator_id'),
        group_id=require_int(data, 'group_id'),
        title=data.get('title'),
        description=data.get('description'),
    )
    return jsonify(session.to_dict()), 201


@voting.route('/sessions/<int:session_id>', methods=['GET'])
def get_session(session_id):
    return jsonify(get_services().voting.get_session(session_id).to_dict())


@voting.route('/groups/<int:group_id>/active', methods=['GET'])
def active_sessions(group_id):
    sessions = get_services().voting.get_active_sessions(group_id)
    return jsonify([s.to_dict() for s in sessions])


@voting.route('/groups/<int:group_id>/history', methods=['GET'])
def group_history(group_id):
    limit, offset = paging()
    return jsonify(get_services().voting.get_group_history(group_id, limit=limit, offset=offset))


@voting.route('/sessions/<int:session_id>/proposals', methods=['POST'])
def propose_meal(session_id):
    data = json_body()
    proposal = get_services().voting.propose_meal(
        session_id, require_int(data, 'meal_id'), require_int(data, 'proposed_by_id')
    )
    return jsonify(proposal.to_dict()), 201


@voting.route('/sessions/<int:session_id>/start-voting', methods=['POST'])
def start_voting(session_id):
    return jsonify(get_services().voting.start_voting_phase(session_id).to_dict())


@voting.route('/sessions/<int:session_id>/votes', methods=['POST'])
def cast_vote(session_id):
    data = json_body()
    result = get_services().voting.cast_vote(
        session_id,
        require_int(data, 'proposal_id'),
        require_int(data, 'voter_id'),
        data.get('vote_type') or 'up',
    )
    return jsonify({
        'vote': result.vote.to_dict(),
        'vote_count': result.vote_count,
        'badges': [b.to_dict() for b in result.badges],
    }), 201 if result.created else 200


def _confirmation_response(result):
    return jsonify({
        'confirmation': result.confirmation.to_dict(),
        'created': result.created,
        'advanced': result.advanced,
        'confirmed': result.confirmed,
        'required': result.required,
    }), 201 if result.created else 200


@voting.route('/sessions/<int:session_id>/confirm-ready', methods=['POST'])
def confirm_ready(session_id):
    result = get_services().voting.confirm_ready_for_voting(session_id, require_int(json_body(), 'user_id'))
    return _confirmation_response(result)


@voting.route('/sessions/<int:session_id>/confirm-votes', methods=['POST'])
def confirm_votes(session_id):
    result = get_services().voting.confirm_votes(session_id, require_int(json_body(), 'user_id'))
    return _confirmation_response(result)


@voting.route('/sessions/<int:session_id>/confirmations', methods=['GET'])
def confirmation_status(session_id):
    return jsonify(get_services().voting.get_confirmation_status(session_id))


@voting.route('/sessions/<int:session_id>/complete', methods=['POST'])
def complete(session_id):
    return jsonify(get_services().voting.complete_voting_session(session_id).to_dict())


@voting.route('/sessions/<int:session_id>/cleanup', methods=['POST'])
def cleanup(session_id):
    return jsonify(get_services().voting.cleanup_voting_session(session_id))


@voting.route('/sessions/<int:session_id>/details', methods=['GET'])
def session_details(session_id):
    return jsonify(get_services().voting.get_session_details(session_id))
