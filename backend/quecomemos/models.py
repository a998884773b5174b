from datetime import datetime, timezone
from sqlalchemy import UniqueConstraint
from quecomemos import db


VOTING_ACTIVE_STATUSES = ('proposal_phase', 'voting_phase')
GAME_ACTIVE_STATUSES = ('waiting', 'ready', 'countdown', 'playing', 'submitting')
GAME_TERMINAL_STATUSES = ('completed', 'cancelled')
GAME_TYPES = ('egg_clicker', 'roulette')
VOTE_TYPES = ('up', 'down')


def utcnow() -> datetime:
    """Naive UTC timestamp; every persisted datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() + 'Z' if value else None


class Profile(db.Model):
    __tablename__ = 'profile'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)

    def to_dict(self):
        return {'id': self.id, 'username': self.username}


class Group(db.Model):
    __tablename__ = 'meal_group'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    members = db.relationship('GroupMember', back_populates='group', order_by='GroupMember.id')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'created_by': self.created_by,
        }


class GroupMember(db.Model):
    __tablename__ = 'group_member'
    __table_args__ = (UniqueConstraint('group_id', 'profile_id', name='uq_group_member'),)
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('meal_group.id'), nullable=False, index=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    role = db.Column(db.String(32), default='member', nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    group = db.relationship('Group', back_populates='members')
    profile = db.relationship('Profile')


class Food(db.Model):
    __tablename__ = 'food'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    kcal = db.Column(db.Float, nullable=False, default=0.0)  # per unit of quantity

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'kcal': self.kcal}


class Meal(db.Model):
    __tablename__ = 'meal'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=True)
    meal_foods = db.relationship('MealFood', back_populates='meal', order_by='MealFood.id')

    def total_kcal(self) -> float:
        return sum(mf.food.kcal * mf.quantity for mf in self.meal_foods)

    def to_dict(self, include_foods=False):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'profile_id': self.profile_id,
        }
        if include_foods:
            data['foods'] = [mf.to_dict() for mf in self.meal_foods]
            data['total_kcal'] = round(self.total_kcal())
        return data


class MealFood(db.Model):
    __tablename__ = 'meal_food'
    __table_args__ = (UniqueConstraint('meal_id', 'food_id', name='uq_meal_food'),)
    id = db.Column(db.Integer, primary_key=True)
    meal_id = db.Column(db.Integer, db.ForeignKey('meal.id'), nullable=False, index=True)
    food_id = db.Column(db.Integer, db.ForeignKey('food.id'), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=1.0)
    meal = db.relationship('Meal', back_populates='meal_foods')
    food = db.relationship('Food')

    def to_dict(self):
        return {
            'food_id': self.food_id,
            'name': self.food.name if self.food else None,
            'quantity': self.quantity,
            'kcal': self.food.kcal if self.food else None,
        }


class VotingSession(db.Model):
    __tablename__ = 'voting_session'
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('meal_group.id'), nullable=False, index=True)
    # Equals group_id while the session is open, NULL afterwards: one open session per group
    active_group_id = db.Column(db.Integer, unique=True, nullable=True)
    initiator_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    title = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(32), default='proposal_phase', nullable=False, index=True)  # proposal_phase, voting_phase, completed
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    proposal_ends_at = db.Column(db.DateTime, nullable=False)
    voting_ends_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    winner_meal_id = db.Column(db.Integer, db.ForeignKey('meal.id'), nullable=True)
    total_votes = db.Column(db.Integer, default=0, nullable=False)

    group = db.relationship('Group')
    winner_meal = db.relationship('Meal')
    proposals = db.relationship('MealProposal', back_populates='session', order_by='MealProposal.id')

    @property
    def active_proposals(self):
        return [p for p in self.proposals if p.is_active]

    def to_dict(self, include_proposals=True):
        data = {
            'id': self.id,
            'group_id': self.group_id,
            'initiator_id': self.initiator_id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'proposal_ends_at': _iso(self.proposal_ends_at),
            'voting_ends_at': _iso(self.voting_ends_at),
            'completed_at': _iso(self.completed_at),
            'winner_meal_id': self.winner_meal_id,
            'total_votes': self.total_votes,
        }
        if include_proposals:
            data['proposals'] = [p.to_dict() for p in self.active_proposals]
        return data


class MealProposal(db.Model):
    __tablename__ = 'meal_proposal'
    __table_args__ = (UniqueConstraint('voting_session_id', 'meal_id', name='uq_proposal_session_meal'),)
    id = db.Column(db.Integer, primary_key=True)
    voting_session_id = db.Column(db.Integer, db.ForeignKey('voting_session.id'), nullable=False, index=True)
    meal_id = db.Column(db.Integer, db.ForeignKey('meal.id'), nullable=False)
    proposed_by_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    proposed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    vote_count = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    session = db.relationship('VotingSession', back_populates='proposals')
    meal = db.relationship('Meal')

    def to_dict(self):
        return {
            'id': self.id,
            'voting_session_id': self.voting_session_id,
            'meal_id': self.meal_id,
            'meal_name': self.meal.name if self.meal else None,
            'proposed_by_id': self.proposed_by_id,
            'proposed_at': _iso(self.proposed_at),
            'vote_count': self.vote_count,
        }


class Vote(db.Model):
    __tablename__ = 'vote'
    __table_args__ = (UniqueConstraint('meal_proposal_id', 'voter_id', name='uq_vote_proposal_voter'),)
    id = db.Column(db.Integer, primary_key=True)
    voting_session_id = db.Column(db.Integer, db.ForeignKey('voting_session.id'), nullable=False, index=True)
    meal_proposal_id = db.Column(db.Integer, db.ForeignKey('meal_proposal.id'), nullable=False, index=True)
    voter_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    vote_type = db.Column(db.String(8), default='up', nullable=False)
    voted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'voting_session_id': self.voting_session_id,
            'meal_proposal_id': self.meal_proposal_id,
            'voter_id': self.voter_id,
            'vote_type': self.vote_type,
            'voted_at': _iso(self.voted_at),
        }


class VotingSessionParticipant(db.Model):
    __tablename__ = 'voting_session_participant'
    __table_args__ = (UniqueConstraint('voting_session_id', 'user_id', name='uq_participant_session_user'),)
    id = db.Column(db.Integer, primary_key=True)
    voting_session_id = db.Column(db.Integer, db.ForeignKey('voting_session.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    # NULL until the session completes
    portion_deadline = db.Column(db.DateTime, nullable=True)
    has_selected_portion = db.Column(db.Boolean, default=False, nullable=False)
    defaulted_to_whole = db.Column(db.Boolean, default=False, nullable=False)
    selected_at = db.Column(db.DateTime, nullable=True)

    session = db.relationship('VotingSession')

    def to_dict(self):
        return {
            'id': self.id,
            'voting_session_id': self.voting_session_id,
            'user_id': self.user_id,
            'joined_at': _iso(self.joined_at),
            'portion_deadline': _iso(self.portion_deadline),
            'has_selected_portion': self.has_selected_portion,
            'defaulted_to_whole': self.defaulted_to_whole,
            'selected_at': _iso(self.selected_at),
        }


class UserProposalConfirmation(db.Model):
    __tablename__ = 'user_proposal_confirmation'
    __table_args__ = (UniqueConstraint('voting_session_id', 'user_id', name='uq_proposal_confirmation'),)
    id = db.Column(db.Integer, primary_key=True)
    voting_session_id = db.Column(db.Integer, db.ForeignKey('voting_session.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    confirmed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'voting_session_id': self.voting_session_id,
            'user_id': self.user_id,
            'confirmed_at': _iso(self.confirmed_at),
        }


class UserVoteConfirmation(db.Model):
    __tablename__ = 'user_vote_confirmation'
    __table_args__ = (UniqueConstraint('voting_session_id', 'user_id', name='uq_vote_confirmation'),)
    id = db.Column(db.Integer, primary_key=True)
    voting_session_id = db.Column(db.Integer, db.ForeignKey('voting_session.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    confirmed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'voting_session_id': self.voting_session_id,
            'user_id': self.user_id,
            'confirmed_at': _iso(self.confirmed_at),
        }


class GameSession(db.Model):
    __tablename__ = 'game_session'
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('meal_group.id'), nullable=False, index=True)
    # Same scheme as VotingSession.active_group_id
    active_group_id = db.Column(db.Integer, unique=True, nullable=True)
    host_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    game_type = db.Column(db.String(32), nullable=False)  # egg_clicker, roulette
    duration = db.Column(db.Integer, default=30, nullable=False)  # seconds
    min_players = db.Column(db.Integer, default=1, nullable=False)
    status = db.Column(db.String(32), default='waiting', nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    winner_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=True)
    winning_meal_id = db.Column(db.Integer, db.ForeignKey('meal.id'), nullable=True)

    group = db.relationship('Group')
    winning_meal = db.relationship('Meal')
    participants = db.relationship('GameParticipant', back_populates='session', order_by='GameParticipant.id')

    def to_dict(self, include_participants=True):
        data = {
            'id': self.id,
            'group_id': self.group_id,
            'host_id': self.host_id,
            'game_type': self.game_type,
            'duration': self.duration,
            'min_players': self.min_players,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'completed_at': _iso(self.completed_at),
            'winner_id': self.winner_id,
            'winning_meal_id': self.winning_meal_id,
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class GameParticipant(db.Model):
    __tablename__ = 'game_participant'
    __table_args__ = (UniqueConstraint('game_session_id', 'profile_id', name='uq_game_participant'),)
    id = db.Column(db.Integer, primary_key=True)
    game_session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    meal_id = db.Column(db.Integer, db.ForeignKey('meal.id'), nullable=True)
    click_count = db.Column(db.Integer, default=0, nullable=False)
    is_ready = db.Column(db.Boolean, default=False, nullable=False)
    has_submitted = db.Column(db.Boolean, default=False, nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)

    session = db.relationship('GameSession', back_populates='participants')
    meal = db.relationship('Meal')
    profile = db.relationship('Profile')

    def to_dict(self):
        return {
            'id': self.id,
            'game_session_id': self.game_session_id,
            'profile_id': self.profile_id,
            'username': self.profile.username if self.profile else None,
            'meal_id': self.meal_id,
            'meal_name': self.meal.name if self.meal else None,
            'click_count': self.click_count,
            'is_ready': self.is_ready,
            'has_submitted': self.has_submitted,
            'submitted_at': _iso(self.submitted_at),
        }


class MealConsumption(db.Model):
    __tablename__ = 'meal_consumption'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False, index=True)
    meal_id = db.Column(db.Integer, db.ForeignKey('meal.id'), nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey('meal_group.id'), nullable=True, index=True)
    type = db.Column(db.String(16), default='individual', nullable=False)  # individual, group
    source = db.Column(db.String(16), default='individual', nullable=False)  # voting, game, individual, group
    voting_session_id = db.Column(db.Integer, db.ForeignKey('voting_session.id'), nullable=True, index=True)
    game_session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=True, index=True)
    portion_fraction = db.Column(db.Float, default=1.0, nullable=False)
    total_kcal = db.Column(db.Integer, default=0, nullable=False)
    consumed_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    meal = db.relationship('Meal')
    food_portions = db.relationship(
        'FoodPortion', back_populates='consumption', order_by='FoodPortion.id', cascade='all, delete-orphan'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'profile_id': self.profile_id,
            'meal_id': self.meal_id,
            'group_id': self.group_id,
            'type': self.type,
            'source': self.source,
            'voting_session_id': self.voting_session_id,
            'game_session_id': self.game_session_id,
            'portion_fraction': self.portion_fraction,
            'total_kcal': self.total_kcal,
            'consumed_at': _iso(self.consumed_at),
            'food_portions': [fp.to_dict() for fp in self.food_portions],
        }


class FoodPortion(db.Model):
    __tablename__ = 'food_portion'
    __table_args__ = (UniqueConstraint('meal_consumption_id', 'food_id', name='uq_food_portion'),)
    id = db.Column(db.Integer, primary_key=True)
    meal_consumption_id = db.Column(db.Integer, db.ForeignKey('meal_consumption.id'), nullable=False, index=True)
    food_id = db.Column(db.Integer, db.ForeignKey('food.id'), nullable=False)
    portion_fraction = db.Column(db.Float, default=1.0, nullable=False)
    quantity_consumed = db.Column(db.Float, nullable=False)

    consumption = db.relationship('MealConsumption', back_populates='food_portions')

    def to_dict(self):
        return {
            'food_id': self.food_id,
            'portion_fraction': self.portion_fraction,
            'quantity_consumed': self.quantity_consumed,
        }
