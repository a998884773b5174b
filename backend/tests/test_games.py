from datetime import timedelta

import pytest

from quecomemos import db
from quecomemos.achievements import AchievementEvent
from quecomemos.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PhaseError,
    ValidationError,
)
from quecomemos.models import GameParticipant, GameSession, MealConsumption


def _clicker(services, seeded, players=3, **kwargs):
    games = services.games
    host = seeded.members[0]
    session = games.create_game_session(seeded.group_id, host, 'egg_clicker', **kwargs)
    for i in range(players):
        games.join_game_session(session.id, seeded.members[i], seeded.meals[i % len(seeded.meals)])
    return session.id


def _play(services, seeded, session_id, players=3):
    games = services.games
    for i in range(players):
        games.mark_player_ready(session_id, seeded.members[i])
    games.start_game_countdown(session_id, seeded.members[0])
    games.start_game_playing(session_id)


def test_create_game_session_defaults(services, seeded, sink):
    session = services.games.create_game_session(seeded.group_id, seeded.members[0], 'egg_clicker')
    assert session.status == 'waiting'
    assert session.duration == 30
    assert session.min_players == 1
    assert session.active_group_id == seeded.group_id
    assert 'game:session:created' in sink.names()


def test_create_game_session_validates_input(services, seeded):
    games = services.games
    with pytest.raises(ValidationError):
        games.create_game_session(seeded.group_id, seeded.members[0], 'tic_tac_toe')
    with pytest.raises(ValidationError):
        games.create_game_session(seeded.group_id, seeded.members[0], 'roulette', duration=0)
    with pytest.raises(PermissionDeniedError):
        games.create_game_session(seeded.group_id, seeded.outsider, 'roulette')


def test_one_active_game_per_group(services, seeded):
    games = services.games
    first = games.create_game_session(seeded.group_id, seeded.members[0], 'egg_clicker')
    with pytest.raises(ConflictError):
        games.create_game_session(seeded.group_id, seeded.members[1], 'roulette')
    games.cancel_game_session(first.id, seeded.members[0])
    again = games.create_game_session(seeded.group_id, seeded.members[1], 'roulette')
    assert again.status == 'waiting'
    assert GameSession.query.filter_by(active_group_id=seeded.group_id).count() == 1


def test_join_updates_meal_without_duplicating(services, seeded):
    games = services.games
    session = games.create_game_session(seeded.group_id, seeded.members[0], 'roulette')
    games.join_game_session(session.id, seeded.members[1], seeded.meals[0])
    participant = games.join_game_session(session.id, seeded.members[1], seeded.meals[2])
    assert participant.meal_id == seeded.meals[2]
    assert GameParticipant.query.filter_by(game_session_id=session.id).count() == 1
    with pytest.raises(NotFoundError):
        games.join_game_session(session.id, seeded.members[2], 9999)
    with pytest.raises(PermissionDeniedError):
        games.join_game_session(session.id, seeded.outsider)


def test_ready_requires_min_players_and_everyone_ready(services, seeded):
    games = services.games
    session_id = _clicker(services, seeded, players=2, min_players=3)
    games.mark_player_ready(session_id, seeded.members[0])
    session = games.mark_player_ready(session_id, seeded.members[1])
    assert session.status == 'waiting'

    games.join_game_session(session_id, seeded.members[2])
    session = games.mark_player_ready(session_id, seeded.members[2])
    assert session.status == 'ready'

    # Un-readying does not revert, and late joiners are still welcome
    session = games.mark_player_ready(session_id, seeded.members[2], False)
    assert session.status == 'ready'
    games.join_game_session(session_id, seeded.members[3])
    assert db.session.get(GameSession, session_id).status == 'ready'


def test_countdown_is_host_only_and_needs_ready(services, seeded):
    games = services.games
    session_id = _clicker(services, seeded, players=1)
    with pytest.raises(PhaseError):
        games.start_game_countdown(session_id, seeded.members[0])
    games.mark_player_ready(session_id, seeded.members[0])
    with pytest.raises(PermissionDeniedError):
        games.start_game_countdown(session_id, seeded.members[1])
    session = games.start_game_countdown(session_id, seeded.members[0])
    assert session.status == 'countdown'


def test_playing_and_end_stamp_times(services, seeded, clock):
    games = services.games
    session_id = _clicker(services, seeded)
    _play(services, seeded, session_id)
    session = db.session.get(GameSession, session_id)
    assert session.status == 'playing'
    assert session.start_time == clock()
    clock.advance(seconds=30)
    session = games.end_game_time(session_id)
    assert session.status == 'submitting'
    assert session.end_time == clock()
    with pytest.raises(PhaseError):
        games.end_game_time(session_id)


def test_clicker_auto_completes_with_highest_count(services, seeded, notifier, sink):
    games = services.games
    session_id = _clicker(services, seeded)
    _play(services, seeded, session_id)
    for profile, clicks in zip(seeded.members[:3], (10, 25, 18)):
        games.submit_click_count(session_id, profile, clicks)

    session = db.session.get(GameSession, session_id)
    assert session.status == 'completed'
    assert session.winner_id == seeded.members[1]
    assert session.winning_meal_id == seeded.meals[1]
    assert session.active_group_id is None
    assert session.completed_at is not None

    records = MealConsumption.query.filter_by(game_session_id=session_id).all()
    assert len(records) == 1
    assert records[0].type == 'group'
    assert records[0].source == 'game'
    assert records[0].profile_id == seeded.members[0]
    assert records[0].total_kcal == 327
    assert notifier.events_for(AchievementEvent.GAME_CLICKER_WON) == [
        (seeded.members[1], AchievementEvent.GAME_CLICKER_WON)
    ]
    completed = sink.of('game:completed')
    assert len(completed) == 1
    assert completed[0][1]['badges'][0]['code'] == 'game_clicker_won'


def test_click_tie_goes_to_earliest_submission(services, seeded, clock):
    games = services.games
    session_id = _clicker(services, seeded, players=2)
    _play(services, seeded, session_id, players=2)
    games.submit_click_count(session_id, seeded.members[1], 20)
    clock.advance(seconds=1)
    games.submit_click_count(session_id, seeded.members[0], 20)
    assert db.session.get(GameSession, session_id).winner_id == seeded.members[1]


def test_click_count_validation(services, seeded):
    games = services.games
    session_id = _clicker(services, seeded, players=1)
    with pytest.raises(PhaseError):
        games.submit_click_count(session_id, seeded.members[0], 5)
    _play(services, seeded, session_id, players=1)
    with pytest.raises(ValidationError):
        games.submit_click_count(session_id, seeded.members[0], -1)
    with pytest.raises(NotFoundError):
        games.submit_click_count(session_id, seeded.members[4], 5)


def test_force_complete_uses_submitted_players_only(services, seeded):
    games = services.games
    session_id = _clicker(services, seeded)
    _play(services, seeded, session_id)
    games.submit_click_count(session_id, seeded.members[2], 7)
    with pytest.raises(PhaseError):
        games.force_complete_game(session_id, seeded.members[0])
    games.end_game_time(session_id)
    with pytest.raises(PermissionDeniedError):
        games.force_complete_game(session_id, seeded.members[1])

    session = games.force_complete_game(session_id, seeded.members[0])
    assert session.status == 'completed'
    assert session.winner_id == seeded.members[2]


def test_force_complete_needs_a_submission(services, seeded):
    games = services.games
    session_id = _clicker(services, seeded, players=1)
    _play(services, seeded, session_id, players=1)
    games.end_game_time(session_id)
    with pytest.raises(PhaseError):
        games.force_complete_game(session_id, seeded.members[0])
    assert db.session.get(GameSession, session_id).status == 'submitting'


def test_late_submission_after_completion_is_rejected(services, seeded):
    games = services.games
    session_id = _clicker(services, seeded, players=1)
    _play(services, seeded, session_id, players=1)
    games.submit_click_count(session_id, seeded.members[0], 3)
    with pytest.raises(PhaseError):
        games.submit_click_count(session_id, seeded.members[0], 30)


def test_click_resubmission_just_before_completion_is_scored(services, seeded, monkeypatch):
    import quecomemos.services.games.manager as manager_module

    games = services.games
    session_id = _clicker(services, seeded)
    _play(services, seeded, session_id)
    games.submit_click_count(session_id, seeded.members[2], 7)
    games.submit_click_count(session_id, seeded.members[1], 5)
    games.end_game_time(session_id)
    real_transition = manager_module.transition
    resubmitted = []

    def transition_after_resubmission(model, ident, expected, values, *criteria):
        if values.get('status') == 'completed' and not resubmitted:
            resubmitted.append(games.submit_click_count(session_id, seeded.members[1], 50))
        return real_transition(model, ident, expected, values, *criteria)

    monkeypatch.setattr(manager_module, 'transition', transition_after_resubmission)
    session = games.force_complete_game(session_id, seeded.members[0])
    assert session.winner_id == seeded.members[1]
    assert session.winning_meal_id == seeded.meals[1]
    assert session.end_time is not None
    with pytest.raises(PhaseError):
        games.submit_click_count(session_id, seeded.members[2], 99)


def _roulette(services, seeded, with_meals=(0, 1, 2)):
    games = services.games
    session = games.create_game_session(seeded.group_id, seeded.members[0], 'roulette')
    for i in with_meals:
        games.join_game_session(session.id, seeded.members[i], seeded.meals[i])
    games.join_game_session(session.id, seeded.members[3])
    return session.id


def test_roulette_preview_does_not_mutate(services, seeded):
    games = services.games
    session_id = _roulette(services, seeded)
    preview = games.determine_roulette_winner(session_id, seeded.members[0])
    assert len(preview['eligible']) == 3
    assert preview['winner']['profile_id'] in seeded.members[:3]
    assert preview['eligible'][preview['winner_index']] == preview['winner']
    assert db.session.get(GameSession, session_id).status == 'waiting'


def test_roulette_with_predetermined_winner(services, seeded, notifier):
    games = services.games
    session_id = _roulette(services, seeded)
    session = games.complete_roulette(session_id, seeded.members[0], winner_profile_id=seeded.members[2])
    assert session.status == 'completed'
    assert session.winner_id == seeded.members[2]
    assert session.winning_meal_id == seeded.meals[2]
    assert notifier.events_for(AchievementEvent.GAME_ROULETTE_WON) == [
        (seeded.members[2], AchievementEvent.GAME_ROULETTE_WON)
    ]
    record = MealConsumption.query.filter_by(game_session_id=session_id, type='group').one()
    assert record.total_kcal == 40
    assert record.description == 'From roulette game in group Casa'


def test_roulette_rules(services, seeded):
    games = services.games
    session_id = _roulette(services, seeded, with_meals=(1,))
    with pytest.raises(PermissionDeniedError):
        games.complete_roulette(session_id, seeded.members[1])
    with pytest.raises(ValidationError):
        games.complete_roulette(session_id, seeded.members[0], winner_profile_id=seeded.members[3])
    session = games.complete_roulette(session_id, seeded.members[0])
    assert session.winner_id == seeded.members[1]
    with pytest.raises(PhaseError):
        games.complete_roulette(session_id, seeded.members[0])


def test_roulette_without_meals_cannot_spin(services, seeded):
    games = services.games
    session_id = _roulette(services, seeded, with_meals=())
    with pytest.raises(PhaseError):
        games.determine_roulette_winner(session_id, seeded.members[0])


def test_roulette_actions_reject_clicker_games(services, seeded):
    session_id = _clicker(services, seeded, players=1)
    with pytest.raises(ValidationError):
        services.games.determine_roulette_winner(session_id, seeded.members[0])


def test_cancel_rules(services, seeded, sink):
    games = services.games
    roulette_id = _roulette(services, seeded, with_meals=(1,))
    with pytest.raises(PhaseError):
        games.cancel_game_session(roulette_id, seeded.members[0])
    games.complete_roulette(roulette_id, seeded.members[0])

    clicker_id = _clicker(services, seeded, players=1)
    with pytest.raises(PermissionDeniedError):
        games.cancel_game_session(clicker_id, seeded.members[1])
    _play(services, seeded, clicker_id, players=1)
    with pytest.raises(PhaseError):
        games.cancel_game_session(clicker_id, seeded.members[0])


def test_cancel_waiting_game_creates_no_consumption(services, seeded, sink):
    games = services.games
    session_id = _clicker(services, seeded, players=2)
    session = games.cancel_game_session(session_id, seeded.members[0])
    assert session.status == 'cancelled'
    assert session.active_group_id is None
    assert MealConsumption.query.filter_by(game_session_id=session_id).count() == 0
    assert 'game:cancelled' in sink.names()
    with pytest.raises(PhaseError):
        games.cancel_game_session(session_id, seeded.members[0])


def test_sweep_ends_overdue_rounds(services, seeded, clock):
    games = services.games
    session_id = _clicker(services, seeded, players=1)
    _play(services, seeded, session_id, players=1)
    clock.advance(seconds=39)
    assert games.check_and_transition_game_sessions() == []
    clock.advance(seconds=1)
    assert games.check_and_transition_game_sessions() == [{'action': 'ended', 'session_id': session_id}]
    assert db.session.get(GameSession, session_id).status == 'submitting'


def test_sweep_closes_idle_games(services, seeded, clock):
    games = services.games
    waiting_id = _roulette(services, seeded)
    clock.advance(hours=1)
    results = games.check_and_transition_game_sessions()
    assert results == [{'action': 'cancelled', 'session_id': waiting_id}]
    assert db.session.get(GameSession, waiting_id).status == 'cancelled'

    clicker_id = _clicker(services, seeded, players=2)
    _play(services, seeded, clicker_id, players=2)
    games.submit_click_count(clicker_id, seeded.members[1], 12)
    games.end_game_time(clicker_id)
    clock.advance(hours=1, seconds=1)
    results = games.check_and_transition_game_sessions()
    assert results == [{'action': 'completed', 'session_id': clicker_id}]
    assert db.session.get(GameSession, clicker_id).winner_id == seeded.members[1]


def test_sweep_can_be_disabled(flask_app, services, seeded, clock):
    flask_app.config['GAME_END_GRACE_SEC'] = 0
    flask_app.config['GAME_IDLE_TIMEOUT_SEC'] = 0
    session_id = _clicker(services, seeded, players=1)
    _play(services, seeded, session_id, players=1)
    clock.advance(days=1)
    assert services.games.check_and_transition_game_sessions() == []
    assert db.session.get(GameSession, session_id).status == 'playing'


def test_group_history_lists_completed_games(services, seeded):
    games = services.games
    session_id = _roulette(services, seeded)
    games.complete_roulette(session_id, seeded.members[0], winner_profile_id=seeded.members[1])
    history = games.get_group_history(seeded.group_id)
    assert len(history) == 1
    assert history[0]['winner']['profile_id'] == seeded.members[1]
    assert history[0]['winning_meal']['id'] == seeded.meals[1]
    assert history[0]['participant_count'] == 4
    assert games.get_active_game_session(seeded.group_id) is None
