from typing import Any, Dict, Iterable

from flask import current_app

NAMESPACE = '/ws'


def group_room(group_id: int) -> str:
    return f"group:{group_id}"


def voting_room(session_id: int) -> str:
    return f"voting-session:{session_id}"


def game_room(session_id: int) -> str:
    return f"game-session:{session_id}"


class EventSink:
    """Fire-and-forget broadcast of session changes."""

    def emit(self, event: str, payload: Dict[str, Any], rooms: Iterable[str]) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def emit(self, event, payload, rooms):
        return None


class SocketIOEventSink(EventSink):
    def __init__(self, socketio, namespace: str = NAMESPACE):
        self.socketio = socketio
        self.namespace = namespace

    def emit(self, event, payload, rooms):
        for room in rooms:
            try:
                self.socketio.emit(event, payload, to=room, namespace=self.namespace)
            except Exception:
                current_app.logger.exception(f"[emit-failed] event={event} room={room}")
