from flask_socketio import join_room, leave_room, emit
from quecomemos import socketio
from quecomemos.events import NAMESPACE, game_room, group_room, voting_room


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def _join(data, key, room_for):
    value = (data or {}).get(key)
    try:
        ident = int(value)
    except (TypeError, ValueError):
        emit('error', {'message': f'{key} is required'})
        return
    room = room_for(ident)
    join_room(room)
    emit('joined', {'room': room})


def handle_join_group(data):
    _join(data, 'group_id', group_room)


def handle_join_voting_session(data):
    _join(data, 'session_id', voting_room)


def handle_join_game_session(data):
    _join(data, 'session_id', game_room)


def handle_leave(data):
    room = (data or {}).get('room')
    if not room:
        emit('error', {'message': 'room is required'})
        return
    leave_room(room)
    emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on the '/ws' namespace."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('join_group', handle_join_group, namespace=NAMESPACE)
    socketio.on_event('join_voting_session', handle_join_voting_session, namespace=NAMESPACE)
    socketio.on_event('join_game_session', handle_join_game_session, namespace=NAMESPACE)
    socketio.on_event('leave', handle_leave, namespace=NAMESPACE)
    socketio.on_event('ping', handle_ping, namespace=NAMESPACE)
