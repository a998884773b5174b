import random
from datetime import timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from quecomemos import db
from quecomemos.achievements import AchievementEvent, NullAchievementNotifier, notify_safely
from quecomemos.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PhaseError,
    SessionError,
    ValidationError,
)
from quecomemos.events import NullEventSink, game_room, group_room
from quecomemos.models import (
    GAME_ACTIVE_STATUSES,
    GAME_TYPES,
    GameParticipant,
    GameSession,
    Group,
    Meal,
    utcnow,
)
from quecomemos.services.common import (
    config_seconds,
    emit_safely,
    get_or_raise,
    lock_phase,
    require_member,
    transition,
)
from .scoring import pick_click_winner, pick_roulette_winner, roulette_eligible

JOINABLE_STATUSES = ('waiting', 'ready')
CANCELLABLE_STATUSES = ('waiting', 'ready', 'countdown')


def _positive_int(value, name):
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer")
    return value


class GameSessionManager:
    def __init__(self, linker, events=None, achievements=None, clock=utcnow, rng=None):
        self.linker = linker
        self.events = events or NullEventSink()
        self.achievements = achievements or NullAchievementNotifier()
        self.clock = clock
        self.rng = rng or random.Random()

    def _rooms(self, session):
        return [group_room(session.group_id), game_room(session.id)]

    def _get(self, session_id) -> GameSession:
        return get_or_raise(GameSession, session_id, 'Game session')

    def _require_host(self, session, host_id, action):
        if session.host_id != host_id:
            raise PermissionDeniedError(f"Only the host can {action}")

    def _broadcast(self, session_id, event='game:session:updated'):
        session = db.session.get(GameSession, session_id)
        emit_safely(self.events, event, {'session': session.to_dict()}, self._rooms(session))
        return session

    def _move(self, session_id, expected, target, **values):
        values.update(status=target, updated_at=self.clock())
        transition(GameSession, session_id, expected, values)
        db.session.commit()
        current_app.logger.info(f"[game-status] game={session_id} -> {target}")
        return self._broadcast(session_id)

    # ---- lobby ----

    def create_game_session(self, group_id: int, host_id: int, game_type: str,
                            duration: int = None, min_players: int = None) -> GameSession:
        if game_type not in GAME_TYPES:
            raise ValidationError(f"game_type must be one of {', '.join(GAME_TYPES)}")
        if duration is None:
            duration = config_seconds('GAME_DEFAULT_DURATION_SEC', 30)
        if min_players is None:
            min_players = int(current_app.config.get('GAME_DEFAULT_MIN_PLAYERS', 1))
        _positive_int(duration, 'duration')
        _positive_int(min_players, 'min_players')
        get_or_raise(Group, group_id, 'Group')
        require_member(group_id, host_id, 'host a game')

        active = GameSession.query.filter_by(active_group_id=group_id).first()
        if active is not None:
            raise ConflictError(f"Group {group_id} already has an active game session ({active.id})")

        now = self.clock()
        session = GameSession(
            group_id=group_id,
            active_group_id=group_id,
            host_id=host_id,
            game_type=game_type,
            duration=duration,
            min_players=min_players,
            status='waiting',
            created_at=now,
            updated_at=now,
        )
        db.session.add(session)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(f"Group {group_id} already has an active game session")

        current_app.logger.info(
            f"[game-create] game={session.id} group={group_id} host={host_id} type={game_type} duration={duration}s min_players={min_players}"
        )
        emit_safely(self.events, 'game:session:created', {'session': session.to_dict()}, self._rooms(session))
        return session

    def join_game_session(self, session_id: int, profile_id: int, meal_id: int = None) -> GameParticipant:
        session = self._get(session_id)
        if session.status not in JOINABLE_STATUSES:
            raise PhaseError(f"Game session {session_id} is {session.status}; joining is closed")
        require_member(session.group_id, profile_id, 'join this game')
        if meal_id is not None:
            get_or_raise(Meal, meal_id, 'Meal')

        participant = None
        for attempt in range(2):
            lock_phase(GameSession, session_id, JOINABLE_STATUSES, updated_at=self.clock())
            participant = GameParticipant.query.filter_by(game_session_id=session_id, profile_id=profile_id).first()
            if participant is None:
                participant = GameParticipant(
                    game_session_id=session_id, profile_id=profile_id, meal_id=meal_id, joined_at=self.clock()
                )
                db.session.add(participant)
            elif meal_id is not None and participant.meal_id != meal_id:
                participant.meal_id = meal_id
            try:
                db.session.commit()
                break
            except IntegrityError:
                db.session.rollback()
                if attempt:
                    raise ConflictError(f"Could not join game session {session_id}")

        current_app.logger.info(f"[game-join] game={session_id} profile={profile_id} meal={participant.meal_id}")
        self._broadcast(session_id)
        return participant

    def mark_player_ready(self, session_id: int, profile_id: int, is_ready: bool = True) -> GameSession:
        session = self._get(session_id)
        if session.status not in JOINABLE_STATUSES:
            raise PhaseError(f"Game session {session_id} is {session.status}; readiness is locked")
        participant = GameParticipant.query.filter_by(game_session_id=session_id, profile_id=profile_id).first()
        if participant is None:
            raise NotFoundError(f"Profile {profile_id} has not joined game session {session_id}")

        lock_phase(GameSession, session_id, JOINABLE_STATUSES, updated_at=self.clock())
        participant.is_ready = bool(is_ready)
        db.session.commit()

        session = self._get(session_id)
        participants = session.participants
        all_ready = len(participants) >= session.min_players and all(p.is_ready for p in participants)
        current_app.logger.info(
            f"[game-ready] game={session_id} profile={profile_id} ready={bool(is_ready)} all_ready={all_ready}"
        )
        if all_ready and session.status == 'waiting':
            try:
                return self._move(session_id, ('waiting',), 'ready')
            except PhaseError as exc:
                current_app.logger.info(f"[game-ready] game={session_id} not moved to ready: {exc.message}")
        return self._broadcast(session_id)

    # ---- round ----

    def start_game_countdown(self, session_id: int, host_id: int) -> GameSession:
        session = self._get(session_id)
        self._require_host(session, host_id, 'start the countdown')
        return self._move(session_id, ('ready',), 'countdown')

    def start_game_playing(self, session_id: int) -> GameSession:
        self._get(session_id)
        return self._move(session_id, ('countdown',), 'playing', start_time=self.clock())

    def end_game_time(self, session_id: int) -> GameSession:
        self._get(session_id)
        return self._move(session_id, ('playing',), 'submitting', end_time=self.clock())

    def submit_click_count(self, session_id: int, profile_id: int, click_count: int) -> GameParticipant:
        if isinstance(click_count, bool) or not isinstance(click_count, int) or click_count < 0:
            raise ValidationError('click_count must be a non-negative integer')
        session = self._get(session_id)
        if session.game_type != 'egg_clicker':
            raise ValidationError('Click counts only apply to egg_clicker games')
        if session.status not in ('playing', 'submitting'):
            raise PhaseError(f"Game session {session_id} is {session.status}; clicks are not accepted")
        participant = GameParticipant.query.filter_by(game_session_id=session_id, profile_id=profile_id).first()
        if participant is None:
            raise NotFoundError(f"Profile {profile_id} has not joined game session {session_id}")

        now = self.clock()
        lock_phase(GameSession, session_id, ('playing', 'submitting'), updated_at=now)
        participant.click_count = click_count
        participant.has_submitted = True
        participant.submitted_at = now
        db.session.commit()
        current_app.logger.info(f"[game-clicks] game={session_id} profile={profile_id} clicks={click_count}")

        pending = GameParticipant.query.filter_by(game_session_id=session_id, has_submitted=False).count()
        if pending == 0:
            try:
                self._complete_clicker(session_id, ('playing', 'submitting'), submitted_only=False)
            except PhaseError as exc:
                current_app.logger.info(f"[game-clicks] game={session_id} auto-complete skipped: {exc.message}")
        else:
            self._broadcast(session_id)
        return db.session.get(GameParticipant, participant.id)

    def force_complete_game(self, session_id: int, host_id: int) -> GameSession:
        session = self._get(session_id)
        self._require_host(session, host_id, 'force the game to finish')
        if session.status != 'submitting':
            raise PhaseError(f"Game session {session_id} is {session.status}, expected submitting")
        return self._complete_clicker(session_id, ('submitting',), submitted_only=True)

    def _complete_clicker(self, session_id, expected, submitted_only) -> GameSession:
        def choose():
            participants = self._participants(session_id)
            if submitted_only:
                participants = [p for p in participants if p.has_submitted]
            winner = pick_click_winner(participants)
            return winner, f"clicks={winner.click_count}"

        return self._complete(session_id, expected, choose, AchievementEvent.GAME_CLICKER_WON)

    def _participants(self, session_id) -> List[GameParticipant]:
        return (
            GameParticipant.query.filter_by(game_session_id=session_id)
            .order_by(GameParticipant.id)
            .populate_existing()
            .all()
        )

    # ---- roulette ----

    def _roulette_candidates(self, session_id, host_id) -> List[GameParticipant]:
        session = self._get(session_id)
        if session.game_type != 'roulette':
            raise ValidationError('This action is only valid for roulette games')
        self._require_host(session, host_id, 'spin the roulette')
        if session.status not in GAME_ACTIVE_STATUSES:
            raise PhaseError(f"Game session {session_id} is {session.status}")
        return roulette_eligible(self._participants(session_id))

    def determine_roulette_winner(self, session_id: int, host_id: int) -> dict:
        eligible = self._roulette_candidates(session_id, host_id)
        winner = pick_roulette_winner(eligible, self.rng)
        return {
            'winner': winner.to_dict(),
            'winner_index': eligible.index(winner),
            'eligible': [p.to_dict() for p in eligible],
        }

    def complete_roulette(self, session_id: int, host_id: int, winner_profile_id: Optional[int] = None) -> GameSession:
        if not self._roulette_candidates(session_id, host_id):
            raise PhaseError('No meal proposals to select from')

        def choose():
            eligible = roulette_eligible(self._participants(session_id))
            winner = pick_roulette_winner(eligible, self.rng, winner_profile_id)
            return winner, f"eligible={len(eligible)}"

        return self._complete(session_id, GAME_ACTIVE_STATUSES, choose, AchievementEvent.GAME_ROULETTE_WON)

    # ---- completion ----

    def _complete(self, session_id, expected, choose_winner, achievement) -> GameSession:
        now = self.clock()
        # Closes the round first; joins and click submissions after this fail their phase lock
        transition(
            GameSession, session_id, expected,
            {
                'status': 'completed',
                'completed_at': now,
                'updated_at': now,
                'end_time': func.coalesce(GameSession.end_time, now),
                'active_group_id': None,
            },
        )
        try:
            winner, detail = choose_winner()
        except SessionError:
            db.session.rollback()
            raise
        winner_profile_id, winning_meal_id = winner.profile_id, winner.meal_id
        db.session.execute(
            update(GameSession)
            .where(GameSession.id == session_id)
            .values(winner_id=winner_profile_id, winning_meal_id=winning_meal_id)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        current_app.logger.info(
            f"[game-complete] game={session_id} winner={winner_profile_id} meal={winning_meal_id} {detail}"
        )

        # Only the caller that won the update above gets here
        badges = notify_safely(self.achievements, winner_profile_id, achievement)
        session = self._get(session_id)
        try:
            self.linker.record_group_consumption(session)
        except Exception:
            db.session.rollback()
            current_app.logger.exception(f"[game-complete] game={session_id} group consumption failed")

        session = self._get(session_id)
        emit_safely(
            self.events, 'game:completed',
            {
                'session': session.to_dict(),
                'winner_id': session.winner_id,
                'winning_meal_id': session.winning_meal_id,
                'badges': [b.to_dict() for b in badges],
            },
            self._rooms(session),
        )
        return session

    def cancel_game_session(self, session_id: int, host_id: int) -> GameSession:
        session = self._get(session_id)
        self._require_host(session, host_id, 'cancel the game')
        if session.status in ('completed', 'cancelled'):
            raise PhaseError(f"Game session {session_id} is already {session.status}")
        if session.game_type == 'roulette' and any(p.meal_id is not None for p in session.participants):
            raise PhaseError('A roulette cannot be cancelled once meals have been proposed')
        if session.game_type == 'egg_clicker' and session.status in ('playing', 'submitting'):
            raise PhaseError('A clicker game cannot be cancelled once play has started')
        return self._cancel(session_id, CANCELLABLE_STATUSES, f"host={host_id}")

    def _cancel(self, session_id, expected, reason) -> GameSession:
        now = self.clock()
        transition(
            GameSession, session_id, expected,
            {'status': 'cancelled', 'updated_at': now, 'active_group_id': None},
        )
        db.session.commit()
        current_app.logger.info(f"[game-cancel] game={session_id} {reason}")
        return self._broadcast(session_id, 'game:cancelled')

    # ---- sweeping ----

    def check_and_transition_game_sessions(self) -> List[dict]:
        """End overdue clicker rounds and close games nobody touched in a long time."""
        now = self.clock()
        grace = config_seconds('GAME_END_GRACE_SEC', 10)
        idle = config_seconds('GAME_IDLE_TIMEOUT_SEC', 3600)
        results = []

        if grace > 0:
            playing = GameSession.query.filter_by(status='playing').order_by(GameSession.id).all()
            overdue = [
                s.id for s in playing
                if s.start_time is not None and now >= s.start_time + timedelta(seconds=s.duration + grace)
            ]
            for sid in overdue:
                results.append(self._sweep_one(sid, 'ended', self.end_game_time, sid))

        if idle > 0:
            cutoff = now - timedelta(seconds=idle)
            stale = (
                GameSession.query
                .filter(GameSession.status.in_(GAME_ACTIVE_STATUSES), GameSession.updated_at <= cutoff)
                .order_by(GameSession.id).all()
            )
            for session in stale:
                sid, status = session.id, session.status
                submitted = [p for p in session.participants if p.has_submitted]
                if status == 'submitting' and submitted:
                    results.append(self._sweep_one(
                        sid, 'completed', self._complete_clicker, sid, ('submitting',), True
                    ))
                else:
                    results.append(self._sweep_one(sid, 'cancelled', self._cancel, sid, (status,), 'idle timeout'))
        return results

    def _sweep_one(self, sid, action, step, *args) -> dict:
        try:
            step(*args)
            return {'action': action, 'session_id': sid}
        except SessionError as exc:
            db.session.rollback()
            current_app.logger.info(f"[game-sweep] game={sid} skipped: {exc.message}")
            return {'action': 'skipped', 'session_id': sid, 'error': exc.kind}
        except Exception:
            db.session.rollback()
            current_app.logger.exception(f"[game-sweep] game={sid} failed")
            return {'action': 'failed', 'session_id': sid}

    # ---- queries ----

    def get_game_session(self, session_id: int) -> GameSession:
        return self._get(session_id)

    def get_active_game_session(self, group_id: int) -> Optional[GameSession]:
        return GameSession.query.filter_by(active_group_id=group_id).first()

    def get_group_history(self, group_id: int, limit: int = 20, offset: int = 0) -> List[dict]:
        sessions = (
            GameSession.query
            .filter_by(group_id=group_id, status='completed')
            .order_by(GameSession.completed_at.desc(), GameSession.id.desc())
            .offset(offset).limit(limit).all()
        )
        history = []
        for s in sessions:
            winner = next((p for p in s.participants if p.profile_id == s.winner_id), None)
            history.append({
                'session': s.to_dict(include_participants=False),
                'winner': winner.to_dict() if winner else None,
                'winning_meal': s.winning_meal.to_dict() if s.winning_meal else None,
                'participant_count': len(s.participants),
            })
        return history
