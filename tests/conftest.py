import itertools
from datetime import datetime, timedelta

import pytest

from app import create_app
from models import db, User, Coordinate

NOW = datetime(2026, 3, 1, 9, 0, 0)
KM_PER_DEGREE = 6371.0 * 3.141592653589793 / 180
ORIGIN = Coordinate(40.0, -74.0)


def north(km, origin=ORIGIN):
    """A point km kilometres due north of origin."""
    return Coordinate(origin.lat + km / KM_PER_DEGREE, origin.lng)


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def build_app(clock, database_uri="sqlite://"):
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": database_uri,
        "SOCKETIO_ASYNC_MODE": "threading",
        "LOG_LEVEL": "WARNING",
    }
    if database_uri != "sqlite://":
        config["SQLALCHEMY_ENGINE_OPTIONS"] = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    app = create_app(config)
    app.extensions["rapidred"].clock = clock
    return app


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def app(clock):
    app = build_app(clock)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions["rapidred"]


@pytest.fixture
def events(service):
    seen = []
    service.bus.subscribe(seen.append)
    yield seen
    service.bus.unsubscribe(seen.append)


@pytest.fixture
def make_user():
    counter = itertools.count(1)

    def make(role="donor", blood_group="O+", at=None, **kwargs):
        n = next(counter)
        kwargs.setdefault("name", f"{role} {n}")
        kwargs.setdefault("eligible_to_donate", role == "donor")
        u = User(
            phone=f"555-{n:04d}",
            role=role,
            blood_group=blood_group,
            latitude=at.lat if at else None,
            longitude=at.lng if at else None,
            is_active=True,
            **kwargs
        )
        db.session.add(u)
        db.session.commit()
        return u

    return make


@pytest.fixture
def recipient(make_user):
    return make_user(role="recipient", blood_group="A+", at=ORIGIN)
