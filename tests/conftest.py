from datetime import datetime

import pytest

from questbot import db, lifecycle
from questbot.db import SessionLocal


@pytest.fixture(autouse=True)
def database():
    """Fresh in-memory SQLite per test."""
    eng = db.configure(database_url="sqlite://")
    db.init_db()
    yield eng
    eng.dispose()


@pytest.fixture
def session():
    with SessionLocal() as s:
        yield s


@pytest.fixture
def user_id(session):
    user = lifecycle.ensure_user(session, "1001", first_name="Ada", chat_id="1001")
    session.commit()
    return user.id


@pytest.fixture
def t0():
    return datetime(2024, 5, 6, 9, 0, 0)


class FakeSender:
    """Collects outbound messages instead of calling Telegram."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def __call__(self, chat_id, message):
        if chat_id in self.fail_for:
            raise RuntimeError(f"chat {chat_id} unreachable")
        self.sent.append((chat_id, message))
        return len(self.sent)


@pytest.fixture
def fake_sender():
    return FakeSender()
