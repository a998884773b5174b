from .manager import GameSessionManager  # noqa: F401
