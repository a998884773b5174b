"""Helpers shared by the session managers.

Phase changes are conditional UPDATE statements. Whether the row was in an
expected status is decided by the database, so a request handler and the
scheduler racing on the same session cannot both win.
"""
from typing import Iterable, List

from flask import current_app
from sqlalchemy import update

from quecomemos import db
from quecomemos.errors import NotFoundError, PermissionDeniedError, PhaseError
from quecomemos.models import GroupMember


def config_seconds(key: str, default: int) -> int:
    return int(current_app.config.get(key, default))


def get_or_raise(model, ident, label: str):
    obj = db.session.get(model, ident) if ident is not None else None
    if obj is None:
        raise NotFoundError(f"{label} {ident} not found")
    return obj


def active_member_ids(group_id: int) -> List[int]:
    rows = (
        db.session.query(GroupMember.profile_id)
        .filter(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
        .order_by(GroupMember.profile_id)
        .all()
    )
    return [r[0] for r in rows]


def require_member(group_id: int, profile_id, action: str = 'act in this group') -> None:
    member = GroupMember.query.filter_by(group_id=group_id, profile_id=profile_id, is_active=True).first()
    if member is None:
        raise PermissionDeniedError(f"Profile {profile_id} is not a member of group {group_id} and cannot {action}")


def transition(model, ident: int, expected: Iterable[str], values: dict, *criteria) -> None:
    """Apply ``values`` only if the row is still in one of ``expected`` statuses.

    Does not commit. On a lost race the transaction is rolled back and
    PhaseError is raised.
    """
    expected = tuple(expected)
    stmt = (
        update(model)
        .where(model.id == ident, model.status.in_(expected), *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        db.session.rollback()
        current = db.session.get(model, ident)
        status = current.status if current is not None else 'missing'
        raise PhaseError(
            f"{model.__name__} {ident} is {status}, expected {' or '.join(expected)}"
        )


def lock_phase(model, ident: int, expected: Iterable[str], **values) -> None:
    """Re-assert the phase inside the current transaction before writing child rows.

    The no-op UPDATE takes the row lock, so a concurrent transition either
    waits for this write or makes it fail.
    """
    if not values:
        values = {'status': model.status}
    transition(model, ident, expected, values)


def emit_safely(sink, event: str, payload: dict, rooms: Iterable[str]) -> None:
    try:
        sink.emit(event, payload, list(rooms))
    except Exception:
        current_app.logger.exception(f"[emit-failed] event={event}")
