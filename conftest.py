import bcrypt
import pytest

from app import CirculationServices, create_app
from clock import FixedClock
from config import TestingConfig
from models import Book, PolicySettings, School, User, db
from tenancy import TenantScope


class RecordingMailer:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return self.succeed


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(tmp_path, clock, mailer):
    """App bound to a throwaway SQLite file, with its app context pushed."""
    app = create_app(
        TestingConfig(f"sqlite:///{tmp_path / 'circulation.db'}"),
        CirculationServices(clock=clock, mailer=mailer),
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def circulation(app):
    return app.extensions['circulation']


@pytest.fixture
def school(app):
    s = School(name="Northside High School", slug="northside")
    db.session.add(s)
    db.session.commit()
    db.session.add(PolicySettings(school_id=s.school_id))
    db.session.commit()
    return s


@pytest.fixture
def other_school(app):
    s = School(name="Riverside Middle School", slug="riverside")
    db.session.add(s)
    db.session.commit()
    return s


@pytest.fixture
def scope(school):
    return TenantScope(school.school_id)


@pytest.fixture
def make_user(school):
    counter = {'n': 0}

    def _make(role='student', school_id=None, password='secret123'):
        counter['n'] += 1
        user = User(
            name=f"User {counter['n']}",
            email=f"user{counter['n']}@example.com",
            password=bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8'),
            role=role,
            school_id=school_id or school.school_id,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_book(school):
    def _make(quantity=1, available=None, school_id=None, title="Clean Code"):
        book = Book(
            title=title,
            author="Robert C. Martin",
            isbn="9780132350884",
            school_id=school_id or school.school_id,
            quantity=quantity,
            available=quantity if available is None else available,
        )
        db.session.add(book)
        db.session.commit()
        return book
    return _make


def current_available(book_id):
    db.session.expire_all()
    return db.session.get(Book, book_id).available
