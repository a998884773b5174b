from quecomemos import db
from quecomemos.models import GameSession, VotingSession


def test_tick_runs_every_sweep(services, seeded, clock):
    voting, games = services.voting, services.games
    session = voting.start_voting_session(seeded.members[0], seeded.group_id)
    proposal = voting.propose_meal(session.id, seeded.meals[0], seeded.members[0])
    voting.start_voting_phase(session.id)
    voting.cast_vote(session.id, proposal.id, seeded.members[1])
    game = games.create_game_session(seeded.other_group_id, seeded.members[0], 'egg_clicker')
    session_id, game_id = session.id, game.id

    clock.advance(minutes=10)
    report = services.scheduler.tick()
    assert report.voting == [{'action': 'completed', 'session_id': session_id}]
    assert report.games == []
    assert report.defaulted == {}
    assert report.errors == []

    clock.advance(minutes=15)
    report = services.scheduler.tick()
    assert report.defaulted == {session_id: 1}

    clock.advance(hours=1)
    report = services.scheduler.tick()
    assert report.games == [{'action': 'cancelled', 'session_id': game_id}]
    assert db.session.get(GameSession, game_id).status == 'cancelled'
    assert db.session.get(VotingSession, session_id).status == 'completed'


def test_tick_isolates_failing_steps(services, seeded, clock, monkeypatch):
    game = services.games.create_game_session(seeded.group_id, seeded.members[0], 'roulette')
    game_id = game.id

    def broken():
        raise RuntimeError('voting store unavailable')

    monkeypatch.setattr(services.voting, 'check_and_transition_voting_sessions', broken)
    clock.advance(hours=2)
    report = services.scheduler.tick()
    assert report.errors == ['voting: voting store unavailable']
    assert report.games == [{'action': 'cancelled', 'session_id': game_id}]
    assert 'errors=1' in report.summary()


def test_scheduler_stays_off_in_tests(flask_app, services):
    assert services.scheduler.start(flask_app) is False
    assert services.scheduler.is_running is False


def test_scheduler_start_ticks_until_stopped(flask_app, services, monkeypatch):
    import quecomemos.services.scheduler as scheduler_module

    scheduler = services.scheduler
    flask_app.config['ENABLE_SCHEDULER_IN_TESTS'] = True
    started = []
    monkeypatch.setattr(
        scheduler_module.socketio, 'start_background_task',
        lambda target, *args: started.append((target, args)),
    )
    ticks = []

    def tick_once():
        ticks.append(1)
        scheduler.stop(flask_app)

    monkeypatch.setattr(scheduler, 'tick', tick_once)
    assert scheduler.start(flask_app) is True
    assert scheduler.is_running is True
    assert scheduler.start(flask_app) is False

    target, args = started[0]
    target(*args)
    assert ticks == [1]
    assert scheduler.is_running is False


def test_sweep_sessions_command(flask_app, services, seeded, clock):
    session_id = services.voting.start_voting_session(seeded.members[0], seeded.group_id).id
    clock.advance(minutes=5)
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['sweep-sessions'])
    assert result.exit_code == 0
    assert 'voting=1' in result.output
    assert db.session.get(VotingSession, session_id) is None
