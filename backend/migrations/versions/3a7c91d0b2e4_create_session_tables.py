"""create groups, meals, voting, game and consumption tables

Revision ID: 3a7c91d0b2e4
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a7c91d0b2e4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'profile',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('profile') as batch_op:
        batch_op.create_index('ix_profile_username', ['username'], unique=True)

    op.create_table(
        'meal_group',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('profile.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'group_member',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), sa.ForeignKey('meal_group.id'), nullable=False),
        sa.Column('profile_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('group_id', 'profile_id', name='uq_group_member'),
    )
    op.create_index('ix_group_member_group_id', 'group_member', ['group_id'])
    op.create_index('ix_group_member_profile_id', 'group_member', ['profile_id'])

    op.create_table(
        'food',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('kcal', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'meal',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('profile_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_table(
        'meal_food',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('meal_id', sa.Integer(), sa.ForeignKey('meal.id'), nullable=False),
        sa.Column('food_id', sa.Integer(), sa.ForeignKey('food.id'), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('meal_id', 'food_id', name='uq_meal_food'),
    )
    op.create_index('ix_meal_food_meal_id', 'meal_food', ['meal_id'])

    op.create_table(
        'voting_session',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), sa.ForeignKey('meal_group.id'), nullable=False),
        sa.Column('active_group_id', sa.Integer(), nullable=True),
        sa.Column('initiator_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('proposal_ends_at', sa.DateTime(), nullable=False),
        sa.Column('voting_ends_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('winner_meal_id', sa.Integer(), sa.ForeignKey('meal.id'), nullable=True),
        sa.Column('total_votes', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_group_id'),
    )
    op.create_index('ix_voting_session_group_id', 'voting_session', ['group_id'])
    op.create_index('ix_voting_session_status', 'voting_session', ['status'])

    op.create_table(
        'meal_proposal',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voting_session_id', sa.Integer(), sa.ForeignKey('voting_session.id'), nullable=False),
        sa.Column('meal_id', sa.Integer(), sa.ForeignKey('meal.id'), nullable=False),
        sa.Column('proposed_by_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('proposed_at', sa.DateTime(), nullable=False),
        sa.Column('vote_count', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('voting_session_id', 'meal_id', name='uq_proposal_session_meal'),
    )
    op.create_index('ix_meal_proposal_voting_session_id', 'meal_proposal', ['voting_session_id'])

    op.create_table(
        'vote',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voting_session_id', sa.Integer(), sa.ForeignKey('voting_session.id'), nullable=False),
        sa.Column('meal_proposal_id', sa.Integer(), sa.ForeignKey('meal_proposal.id'), nullable=False),
        sa.Column('voter_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('vote_type', sa.String(length=8), nullable=False),
        sa.Column('voted_at', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('meal_proposal_id', 'voter_id', name='uq_vote_proposal_voter'),
    )
    op.create_index('ix_vote_voting_session_id', 'vote', ['voting_session_id'])
    op.create_index('ix_vote_meal_proposal_id', 'vote', ['meal_proposal_id'])

    op.create_table(
        'voting_session_participant',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voting_session_id', sa.Integer(), sa.ForeignKey('voting_session.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.Column('portion_deadline', sa.DateTime(), nullable=True),
        sa.Column('has_selected_portion', sa.Boolean(), nullable=False),
        sa.Column('defaulted_to_whole', sa.Boolean(), nullable=False),
        sa.Column('selected_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('voting_session_id', 'user_id', name='uq_participant_session_user'),
    )
    op.create_index('ix_voting_session_participant_voting_session_id', 'voting_session_participant', ['voting_session_id'])

    for table, constraint in (
        ('user_proposal_confirmation', 'uq_proposal_confirmation'),
        ('user_vote_confirmation', 'uq_vote_confirmation'),
    ):
        op.create_table(
            table,
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('voting_session_id', sa.Integer(), sa.ForeignKey('voting_session.id'), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
            sa.Column('confirmed_at', sa.DateTime(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('voting_session_id', 'user_id', name=constraint),
        )
        op.create_index(f'ix_{table}_voting_session_id', table, ['voting_session_id'])

    op.create_table(
        'game_session',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('group_id', sa.Integer(), sa.ForeignKey('meal_group.id'), nullable=False),
        sa.Column('active_group_id', sa.Integer(), nullable=True),
        sa.Column('host_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('game_type', sa.String(length=32), nullable=False),
        sa.Column('duration', sa.Integer(), nullable=False),
        sa.Column('min_players', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('winner_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=True),
        sa.Column('winning_meal_id', sa.Integer(), sa.ForeignKey('meal.id'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_group_id'),
    )
    op.create_index('ix_game_session_group_id', 'game_session', ['group_id'])
    op.create_index('ix_game_session_status', 'game_session', ['status'])

    op.create_table(
        'game_participant',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=False),
        sa.Column('profile_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('meal_id', sa.Integer(), sa.ForeignKey('meal.id'), nullable=True),
        sa.Column('click_count', sa.Integer(), nullable=False),
        sa.Column('is_ready', sa.Boolean(), nullable=False),
        sa.Column('has_submitted', sa.Boolean(), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('game_session_id', 'profile_id', name='uq_game_participant'),
    )
    op.create_index('ix_game_participant_game_session_id', 'game_participant', ['game_session_id'])

    op.create_table(
        'meal_consumption',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('profile_id', sa.Integer(), sa.ForeignKey('profile.id'), nullable=False),
        sa.Column('meal_id', sa.Integer(), sa.ForeignKey('meal.id'), nullable=False),
        sa.Column('group_id', sa.Integer(), sa.ForeignKey('meal_group.id'), nullable=True),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('voting_session_id', sa.Integer(), sa.ForeignKey('voting_session.id'), nullable=True),
        sa.Column('game_session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=True),
        sa.Column('portion_fraction', sa.Float(), nullable=False),
        sa.Column('total_kcal', sa.Integer(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    for column in ('profile_id', 'group_id', 'voting_session_id', 'game_session_id'):
        op.create_index(f'ix_meal_consumption_{column}', 'meal_consumption', [column])

    op.create_table(
        'food_portion',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('meal_consumption_id', sa.Integer(), sa.ForeignKey('meal_consumption.id'), nullable=False),
        sa.Column('food_id', sa.Integer(), sa.ForeignKey('food.id'), nullable=False),
        sa.Column('portion_fraction', sa.Float(), nullable=False),
        sa.Column('quantity_consumed', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('meal_consumption_id', 'food_id', name='uq_food_portion'),
    )
    op.create_index('ix_food_portion_meal_consumption_id', 'food_portion', ['meal_consumption_id'])


def downgrade():
    for table in (
        'food_portion',
        'meal_consumption',
        'game_participant',
        'game_session',
        'user_vote_confirmation',
        'user_proposal_confirmation',
        'voting_session_participant',
        'vote',
        'meal_proposal',
        'voting_session',
        'meal_food',
        'meal',
        'food',
        'group_member',
        'meal_group',
        'profile',
    ):
        op.drop_table(table)
