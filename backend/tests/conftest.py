import os
import sys
import random
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

# Ensure the backend root (containing the `quecomemos` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from quecomemos import create_app, db, socketio
from quecomemos.achievements import AchievementEvent, AchievementNotifier, BadgeEarned
from quecomemos.events import EventSink
from quecomemos.services import Services, get_services


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ALLOWED_ORIGINS = []
    PROPOSAL_PHASE_DURATION_SEC = 300
    VOTING_PHASE_DURATION_SEC = 600
    PORTION_SELECTION_WINDOW_SEC = 900
    SCHEDULER_INTERVAL_SEC = 60
    GAME_DEFAULT_DURATION_SEC = 30
    GAME_DEFAULT_MIN_PLAYERS = 1
    GAME_END_GRACE_SEC = 10
    GAME_IDLE_TIMEOUT_SEC = 3600


START = datetime(2026, 1, 15, 12, 0, 0)


class FrozenClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, event, payload, rooms):
        self.events.append((event, payload, list(rooms)))

    def names(self):
        return [e[0] for e in self.events]

    def of(self, name):
        return [e for e in self.events if e[0] == name]


class RecordingNotifier(AchievementNotifier):
    """Hands out one badge per win so tests can see badges surface."""

    def __init__(self):
        self.calls = []

    def notify(self, profile_id, event):
        self.calls.append((profile_id, event))
        if event in (AchievementEvent.VOTING_WON, AchievementEvent.GAME_CLICKER_WON, AchievementEvent.GAME_ROULETTE_WON):
            return [BadgeEarned(code=event.value, name=event.value.replace('_', ' ').title())]
        return []

    def events_for(self, event):
        return [c for c in self.calls if c[1] == event]


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def flask_app(clock, sink, notifier):
    services = Services.build(events=sink, achievements=notifier, clock=clock, rng=random.Random(7))
    application = create_app(TestConfig, services=services)
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def services(flask_app):
    return get_services(flask_app)


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def seeded(flask_app):
    """Five-member group, a two-member second group, one outsider and three meals.

    Meal kcal totals: 500 (arroz con pollo), 327 (gallo pinto), 40 (ensalada).
    """
    from quecomemos.models import Food, Group, GroupMember, Meal, MealFood, Profile

    names = ['ana', 'bruno', 'carla', 'diego', 'elena', 'zoe']
    profiles = [Profile(username=n) for n in names]
    db.session.add_all(profiles)
    db.session.flush()
    members, outsider = profiles[:5], profiles[5]

    group = Group(name='Casa', created_by=members[0].id)
    other = Group(name='Oficina', created_by=members[0].id)
    db.session.add_all([group, other])
    db.session.flush()
    for p in members:
        db.session.add(GroupMember(group_id=group.id, profile_id=p.id))
    for p in (members[0], members[1]):
        db.session.add(GroupMember(group_id=other.id, profile_id=p.id))
    # Former member; never counts toward quorum
    db.session.add(GroupMember(group_id=group.id, profile_id=outsider.id, is_active=False))

    rice = Food(name='Rice', kcal=130.0)
    chicken = Food(name='Chicken', kcal=160.0)
    beans = Food(name='Black beans', kcal=132.0)
    lettuce = Food(name='Lettuce', kcal=20.0)
    db.session.add_all([rice, chicken, beans, lettuce])
    db.session.flush()

    meals = []
    for name, foods in (
        ('Arroz con pollo', [(rice, 2.0), (chicken, 1.5)]),
        ('Gallo pinto', [(rice, 1.5), (beans, 1.0)]),
        ('Ensalada', [(lettuce, 2.0)]),
    ):
        meal = Meal(name=name, profile_id=members[0].id)
        db.session.add(meal)
        db.session.flush()
        for food, quantity in foods:
            db.session.add(MealFood(meal_id=meal.id, food_id=food.id, quantity=quantity))
        meals.append(meal.id)
    db.session.commit()

    return SimpleNamespace(
        group_id=group.id,
        other_group_id=other.id,
        members=[p.id for p in members],
        outsider=outsider.id,
        meals=meals,
        foods=SimpleNamespace(rice=rice.id, chicken=chicken.id, beans=beans.id, lettuce=lettuce.id),
    )
