import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from flask import current_app

from quecomemos import db, socketio
from quecomemos.models import utcnow


@dataclass
class TickReport:
    started_at: datetime
    voting: List[dict] = field(default_factory=list)
    games: List[dict] = field(default_factory=list)
    defaulted: Dict[int, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"voting={len(self.voting)} games={len(self.games)} "
            f"defaulted={sum(self.defaulted.values())} errors={len(self.errors)}"
        )

    def to_dict(self):
        return {
            'started_at': self.started_at.isoformat() + 'Z',
            'voting': self.voting,
            'games': self.games,
            'defaulted': self.defaulted,
            'errors': self.errors,
        }


class SessionScheduler:
    """Periodic sweep over persisted deadlines.

    Nothing is kept in memory between ticks, so a restarted process picks up
    exactly where the database says things are.
    """

    def __init__(self, voting, games, linker, clock=utcnow):
        self.voting = voting
        self.games = games
        self.linker = linker
        self.clock = clock
        self._running = False
        self._generation = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def tick(self) -> TickReport:
        """Run one sweep. Must be called inside an application context."""
        report = TickReport(started_at=self.clock())
        steps = (
            ('voting', self.voting.check_and_transition_voting_sessions),
            ('games', self.games.check_and_transition_game_sessions),
            ('defaulted', self.linker.default_all_expired),
        )
        for name, step in steps:
            try:
                setattr(report, name, step())
            except Exception as exc:
                db.session.rollback()
                current_app.logger.exception(f"[scheduler] step={name} failed")
                report.errors.append(f"{name}: {exc}")
        current_app.logger.info(f"[scheduler-tick] {report.summary()}")
        return report

    def start(self, app) -> bool:
        if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
            return False
        if self._running:
            return False
        self._running = True
        self._generation += 1
        interval = int(app.config.get('SCHEDULER_INTERVAL_SEC', 60))
        app.logger.info(f"[scheduler-start] interval={interval}s")
        socketio.start_background_task(self._worker, app, self._generation)
        return True

    def stop(self, app=None) -> None:
        if self._running and app is not None:
            app.logger.info('[scheduler-stop]')
        self._running = False

    def _alive(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _worker(self, app, generation: int) -> None:
        interval = max(1, int(app.config.get('SCHEDULER_INTERVAL_SEC', 60)))
        try:
            hb = int(app.config.get('SCHEDULER_HEARTBEAT_SEC', 0))
        except (TypeError, ValueError):
            hb = 0
        while self._alive(generation):
            with app.app_context():
                try:
                    self.tick()
                except Exception:
                    app.logger.exception('[scheduler] tick failed')
                finally:
                    db.session.remove()
            self._sleep(app, interval, hb, generation)

    def _sleep(self, app, delay: int, hb: int, generation: int) -> None:
        # One-second steps so stop() takes effect without waiting a full interval
        slept = 0
        next_beat: Optional[int] = hb if hb > 0 else None
        while slept < delay and self._alive(generation):
            step = min(1, delay - slept)
            time.sleep(step)
            slept += step
            if next_beat is not None and slept >= next_beat:
                next_beat += hb
                app.logger.info(f"[scheduler-heartbeat] next_tick_in={max(0, delay - slept)}s")
