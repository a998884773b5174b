"""Links a decided meal to consumption records.

A completed session produces one ``group`` record for the whole winning
meal. Every tracked member then reports the portion they actually ate, which
becomes their own ``individual`` record. Members who never answer are
defaulted to the whole meal once their deadline passes.
"""
from datetime import timedelta
from numbers import Number
from typing import Dict, List, Optional

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from quecomemos import db
from quecomemos.errors import DeadlineError, NotFoundError, PhaseError, ValidationError
from quecomemos.models import (
    FoodPortion,
    GameParticipant,
    GameSession,
    Group,
    Meal,
    MealConsumption,
    VotingSession,
    VotingSessionParticipant,
    utcnow,
)
from quecomemos.services.common import config_seconds, get_or_raise


def _portion_window():
    return timedelta(seconds=config_seconds('PORTION_SELECTION_WINDOW_SEC', 900))


def _is_number(value) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


class ConsumptionLinker:
    def __init__(self, clock=utcnow):
        self.clock = clock

    # ---- group-level records ----

    def record_group_consumption(self, session) -> Optional[MealConsumption]:
        """Create the single group record for a completed session.

        Returns the existing record on a repeated call, and None when the
        session finished without a meal (a clicker winner who never picked one).
        """
        if isinstance(session, VotingSession):
            source, owner_id, meal_id = 'voting', session.initiator_id, session.winner_meal_id
            link = {'voting_session_id': session.id}
            label = 'voting session'
        elif isinstance(session, GameSession):
            source, owner_id, meal_id = 'game', session.host_id, session.winning_meal_id
            link = {'game_session_id': session.id}
            label = 'clicker game' if session.game_type == 'egg_clicker' else 'roulette game'
        else:
            raise ValidationError(f"Unsupported session type {type(session).__name__}")

        if session.status != 'completed':
            raise PhaseError(f"{type(session).__name__} {session.id} is {session.status}, expected completed")
        if meal_id is None:
            current_app.logger.info(f"[group-consumption-skip] {source}={session.id} no winning meal")
            return None

        existing = MealConsumption.query.filter_by(type='group', **link).first()
        if existing is not None:
            return existing

        meal = get_or_raise(Meal, meal_id, 'Meal')
        group = db.session.get(Group, session.group_id)
        group_name = group.name if group else session.group_id
        record = MealConsumption(
            name=f"Consumption of {meal.name}",
            description=f"From {label} in group {group_name}",
            profile_id=owner_id,
            meal_id=meal.id,
            group_id=session.group_id,
            type='group',
            source=source,
            portion_fraction=1.0,
            total_kcal=round(meal.total_kcal()),
            consumed_at=session.completed_at or self.clock(),
            created_at=self.clock(),
            **link,
        )
        for mf in meal.meal_foods:
            record.food_portions.append(
                FoodPortion(food_id=mf.food_id, portion_fraction=1.0, quantity_consumed=mf.quantity)
            )
        db.session.add(record)
        db.session.commit()
        current_app.logger.info(
            f"[group-consumption] {source}={session.id} group={session.group_id} meal={meal.id} kcal={record.total_kcal}"
        )
        return record

    # ---- participant tracking ----

    def track_participant(self, session: VotingSession, user_id: int) -> VotingSessionParticipant:
        participant = VotingSessionParticipant.query.filter_by(voting_session_id=session.id, user_id=user_id).first()
        if participant is not None:
            return participant
        participant = VotingSessionParticipant(voting_session_id=session.id, user_id=user_id, joined_at=self.clock())
        db.session.add(participant)
        try:
            db.session.commit()
        except IntegrityError:
            # Tracked concurrently by another request
            db.session.rollback()
            participant = VotingSessionParticipant.query.filter_by(voting_session_id=session.id, user_id=user_id).first()
        return participant

    def update_participant_deadlines(self, session: VotingSession) -> int:
        if session.completed_at is None:
            raise PhaseError(f"VotingSession {session.id} has not completed")
        deadline = session.completed_at + _portion_window()
        result = db.session.execute(
            update(VotingSessionParticipant)
            .where(VotingSessionParticipant.voting_session_id == session.id)
            .values(portion_deadline=deadline)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        current_app.logger.info(
            f"[portion-deadlines] session={session.id} participants={result.rowcount} deadline={deadline.isoformat()}"
        )
        return result.rowcount

    # ---- portion selection ----

    def select_portion(self, session_id: int, user_id: int, portion_fraction, food_portions=()) -> MealConsumption:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'completed':
            raise PhaseError(f"Voting session {session_id} is {session.status}; portions open after completion")
        participant = VotingSessionParticipant.query.filter_by(voting_session_id=session_id, user_id=user_id).first()
        if participant is None:
            raise NotFoundError(f"Profile {user_id} did not take part in voting session {session_id}")
        now = self.clock()
        if participant.portion_deadline is None or now >= participant.portion_deadline:
            raise DeadlineError(f"Portion selection for voting session {session_id} closed")
        if session.winner_meal is None:
            raise ValidationError(f"Voting session {session_id} has no winning meal")

        record = self._write_individual(
            profile_id=user_id,
            meal=session.winner_meal,
            source='voting',
            link={'voting_session_id': session.id},
            portion_fraction=portion_fraction,
            food_portions=food_portions,
        )
        participant.has_selected_portion = True
        participant.selected_at = now
        db.session.commit()
        current_app.logger.info(
            f"[portion] session={session_id} user={user_id} fraction={record.portion_fraction} kcal={record.total_kcal}"
        )
        return record

    def select_game_portion(self, session_id: int, profile_id: int, portion_fraction, food_portions=()) -> MealConsumption:
        session = get_or_raise(GameSession, session_id, 'Game session')
        if session.status != 'completed' or session.completed_at is None:
            raise PhaseError(f"Game session {session_id} is {session.status}; portions open after completion")
        participant = GameParticipant.query.filter_by(game_session_id=session_id, profile_id=profile_id).first()
        if participant is None:
            raise NotFoundError(f"Profile {profile_id} did not play game session {session_id}")
        if self.clock() >= session.completed_at + _portion_window():
            raise DeadlineError(f"Portion selection for game session {session_id} closed")
        if session.winning_meal is None:
            raise ValidationError(f"Game session {session_id} has no winning meal")

        record = self._write_individual(
            profile_id=profile_id,
            meal=session.winning_meal,
            source='game',
            link={'game_session_id': session.id},
            portion_fraction=portion_fraction,
            food_portions=food_portions,
        )
        db.session.commit()
        current_app.logger.info(
            f"[portion] game={session_id} profile={profile_id} fraction={record.portion_fraction} kcal={record.total_kcal}"
        )
        return record

    def _write_individual(self, profile_id, meal, source, link, portion_fraction,
                          food_portions=(), defaulted=False) -> MealConsumption:
        if not _is_number(portion_fraction) or not 0 <= portion_fraction <= 1:
            raise ValidationError('portion_fraction must be a number between 0 and 1')
        overrides = self._parse_food_portions(meal, food_portions)

        record = MealConsumption.query.filter_by(profile_id=profile_id, type='individual', **link).first()
        if record is None:
            record = MealConsumption(
                profile_id=profile_id,
                meal_id=meal.id,
                group_id=None,
                type='individual',
                source=source,
                created_at=self.clock(),
                **link,
            )
            db.session.add(record)
        else:
            # Replace, never merge
            record.food_portions.clear()
            db.session.flush()

        if defaulted:
            record.name = f"{meal.name} (100% - auto-defaulted)"
        else:
            record.name = f"{meal.name} ({round(portion_fraction * 100)}%)"
        record.description = f"Portion of {meal.name}"
        record.portion_fraction = float(portion_fraction)
        record.consumed_at = self.clock()

        total = 0.0
        for mf in meal.meal_foods:
            kind, value = overrides.get(mf.food_id, ('fraction', portion_fraction))
            if kind == 'quantity':
                quantity = float(value)
                fraction = quantity / mf.quantity if mf.quantity else 0.0
            else:
                fraction = float(value)
                quantity = mf.quantity * fraction
            total += mf.food.kcal * quantity
            record.food_portions.append(
                FoodPortion(food_id=mf.food_id, portion_fraction=fraction, quantity_consumed=quantity)
            )
        record.total_kcal = round(total)
        db.session.flush()
        return record

    @staticmethod
    def _parse_food_portions(meal: Meal, food_portions) -> Dict[int, tuple]:
        meal_food_ids = {mf.food_id for mf in meal.meal_foods}
        parsed = {}
        for entry in food_portions or ():
            if not isinstance(entry, dict) or 'food_id' not in entry:
                raise ValidationError('Each food portion needs a food_id')
            food_id = entry['food_id']
            if food_id not in meal_food_ids:
                raise ValidationError(f"Food {food_id} is not part of meal {meal.id}")
            if entry.get('quantity') is not None:
                quantity = entry['quantity']
                if not _is_number(quantity) or quantity < 0:
                    raise ValidationError('quantity must be a non-negative number')
                parsed[food_id] = ('quantity', quantity)
            elif entry.get('portion_fraction') is not None:
                fraction = entry['portion_fraction']
                if not _is_number(fraction) or not 0 <= fraction <= 1:
                    raise ValidationError('portion_fraction must be a number between 0 and 1')
                parsed[food_id] = ('fraction', fraction)
            else:
                raise ValidationError(f"Food portion for food {food_id} needs portion_fraction or quantity")
        return parsed

    # ---- defaulting ----

    def default_expired_participants(self, session_id: int) -> List[MealConsumption]:
        session = get_or_raise(VotingSession, session_id, 'Voting session')
        if session.status != 'completed' or session.winner_meal is None:
            return []
        now = self.clock()
        pending = (
            VotingSessionParticipant.query
            .filter(
                VotingSessionParticipant.voting_session_id == session_id,
                VotingSessionParticipant.has_selected_portion.is_(False),
                VotingSessionParticipant.defaulted_to_whole.is_(False),
                VotingSessionParticipant.portion_deadline.isnot(None),
                VotingSessionParticipant.portion_deadline <= now,
            )
            .order_by(VotingSessionParticipant.id)
            .all()
        )
        created = []
        for participant in pending:
            claimed = db.session.execute(
                update(VotingSessionParticipant)
                .where(
                    VotingSessionParticipant.id == participant.id,
                    VotingSessionParticipant.has_selected_portion.is_(False),
                    VotingSessionParticipant.defaulted_to_whole.is_(False),
                )
                .values(defaulted_to_whole=True, has_selected_portion=True, selected_at=now)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue
            record = self._write_individual(
                profile_id=participant.user_id,
                meal=session.winner_meal,
                source='voting',
                link={'voting_session_id': session.id},
                portion_fraction=1.0,
                defaulted=True,
            )
            db.session.commit()
            created.append(record)
            current_app.logger.info(f"[portion-default] session={session_id} user={participant.user_id}")
        return created

    def default_all_expired(self) -> Dict[int, int]:
        now = self.clock()
        rows = (
            db.session.query(VotingSessionParticipant.voting_session_id)
            .filter(
                VotingSessionParticipant.has_selected_portion.is_(False),
                VotingSessionParticipant.defaulted_to_whole.is_(False),
                VotingSessionParticipant.portion_deadline.isnot(None),
                VotingSessionParticipant.portion_deadline <= now,
            )
            .distinct()
            .order_by(VotingSessionParticipant.voting_session_id)
            .all()
        )
        defaulted = {}
        for (session_id,) in rows:
            try:
                count = len(self.default_expired_participants(session_id))
            except Exception:
                db.session.rollback()
                current_app.logger.exception(f"[portion-default-failed] session={session_id}")
                continue
            if count:
                defaulted[session_id] = count
        return defaulted

    # ---- queries ----

    def get_participant_status(self, session_id: int, user_id: int) -> dict:
        self.default_expired_participants(session_id)
        participant = VotingSessionParticipant.query.filter_by(voting_session_id=session_id, user_id=user_id).first()
        if participant is None:
            raise NotFoundError(f"Profile {user_id} did not take part in voting session {session_id}")
        now = self.clock()
        deadline = participant.portion_deadline
        record = MealConsumption.query.filter_by(
            voting_session_id=session_id, profile_id=user_id, type='individual'
        ).first()
        return {
            'participant': participant.to_dict(),
            'deadline_passed': deadline is not None and now >= deadline,
            'seconds_remaining': max(0, int((deadline - now).total_seconds())) if deadline else None,
            'consumption': record.to_dict() if record else None,
        }

    def personal_history(self, profile_id: int, limit: int = 50) -> List[MealConsumption]:
        return (
            MealConsumption.query
            .filter_by(profile_id=profile_id, type='individual')
            .order_by(MealConsumption.consumed_at.desc(), MealConsumption.id.desc())
            .limit(limit)
            .all()
        )

    def personal_kcal_total(self, profile_id: int, since=None, until=None) -> int:
        query = db.session.query(func.coalesce(func.sum(MealConsumption.total_kcal), 0)).filter(
            MealConsumption.profile_id == profile_id,
            MealConsumption.type == 'individual',
        )
        if since is not None:
            query = query.filter(MealConsumption.consumed_at >= since)
        if until is not None:
            query = query.filter(MealConsumption.consumed_at < until)
        return int(query.scalar() or 0)
