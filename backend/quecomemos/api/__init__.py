from flask import request

from quecomemos.errors import ValidationError


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def require_int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None:
        raise ValidationError(f"{key} is required")
    return to_int(value, key)


def optional_int(data: dict, key: str):
    value = data.get(key)
    return None if value is None else to_int(value, key)


def to_int(value, key: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def paging(default_limit: int = 20):
    limit = to_int(request.args.get('limit', default_limit), 'limit')
    offset = to_int(request.args.get('offset', 0), 'offset')
    if limit < 1 or offset < 0:
        raise ValidationError('limit must be positive and offset non-negative')
    return min(limit, 100), offset


def optional_bool(data: dict, key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false")
    return value
