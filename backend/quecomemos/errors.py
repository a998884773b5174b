"""Typed failures raised by the session managers.

Each error carries a ``kind`` so transports can tell them apart without
string matching, and a default HTTP ``status_code`` used by the API layer.
"""


class SessionError(Exception):
    kind = 'error'
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.message, 'kind': self.kind}


class ValidationError(SessionError):
    kind = 'validation'
    status_code = 400


class NotFoundError(SessionError):
    kind = 'not_found'
    status_code = 404


class PermissionDeniedError(SessionError):
    kind = 'permission'
    status_code = 403


class PhaseError(SessionError):
    kind = 'phase'
    status_code = 409


class DeadlineError(SessionError):
    kind = 'deadline'
    status_code = 410


class ConflictError(SessionError):
    kind = 'conflict'
    status_code = 409
