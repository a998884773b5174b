from flask import current_app

from quecomemos.models import utcnow


class Services:
    """The managers one app instance works with, kept in ``app.extensions``."""

    def __init__(self, voting, games, linker, scheduler):
        self.voting = voting
        self.games = games
        self.linker = linker
        self.scheduler = scheduler

    @classmethod
    def build(cls, events=None, achievements=None, clock=utcnow, rng=None):
        from .consumption import ConsumptionLinker
        from .games import GameSessionManager
        from .scheduler import SessionScheduler
        from .voting import VotingSessionManager

        linker = ConsumptionLinker(clock=clock)
        voting = VotingSessionManager(linker, events=events, achievements=achievements, clock=clock)
        games = GameSessionManager(linker, events=events, achievements=achievements, clock=clock, rng=rng)
        scheduler = SessionScheduler(voting, games, linker, clock=clock)
        return cls(voting, games, linker, scheduler)


def get_services(app=None) -> Services:
    return (app or current_app).extensions['quecomemos']
