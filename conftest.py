import os

# Must be set before core.db is imported so it falls back to SQLite
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("PUSHER_ENABLED", "false")

import itertools
from datetime import datetime, timedelta

import pytest
from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from core import config
from core import rate_limit
from core.db import Base, build_engine, get_db
from models import Conversation, ConversationParticipant, Message, MessageRead, User
from routers.conversations import fanout
from routers.conversations.api import router as conversations_router
from routers.dependencies import get_current_user

_account_ids = itertools.count(1000000001)


@pytest.fixture(scope="function")
def test_engine():
    """A fresh in-memory database per test"""
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def test_db(test_engine):
    TestingSessionLocal = sessionmaker(bind=test_engine, autocommit=False, autoflush=False)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_user(test_db):
    def _make_user(username, **kwargs):
        user = User(
            account_id=next(_account_ids),
            descope_user_id=f"descope_{username}",
            email=f"{username}@example.com",
            username=username,
            **kwargs,
        )
        test_db.add(user)
        test_db.commit()
        test_db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user("alice", is_online=True, profile_pic_url="https://cdn.example.com/a.png")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


@pytest.fixture
def carol(make_user):
    return make_user("carol")


@pytest.fixture
def dave(make_user):
    return make_user("dave")


@pytest.fixture(autouse=True)
def isolate_side_effects(monkeypatch):
    """No Redis, no Pusher: memory rate limiter and in-process fan-out."""
    monkeypatch.setattr(config, "FANOUT_QUEUE_ENABLED", False)
    monkeypatch.setattr(rate_limit, "default_rate_limiter", rate_limit.RateLimiter(use_redis=False))


@pytest.fixture
def deliveries(monkeypatch):
    """Every Delivery handed to the broadcast collaborator, in order."""
    sent = []

    def _capture(delivery):
        sent.append(delivery)
        return True

    monkeypatch.setattr(fanout, "deliver", _capture)
    return sent


@pytest.fixture
def make_client(test_db, deliveries):
    """Build an app acting as ``user`` on the shared test session."""
    from main import register_exception_handlers

    def _make_client(user):
        app = FastAPI()
        app.include_router(conversations_router)
        register_exception_handlers(app)

        def override_get_db():
            yield test_db

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = lambda: user
        return app

    return _make_client


@pytest.fixture
def add_message(test_db):
    """Insert a message directly, optionally at a fixed time."""
    def _add_message(conversation, sender, content="hello", created_at=None, **kwargs):
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender.account_id,
            content=content,
            created_at=created_at or datetime.utcnow(),
            **kwargs,
        )
        test_db.add(message)
        test_db.flush()
        test_db.add(MessageRead(message_id=message.id, user_id=sender.account_id))
        test_db.commit()
        return message

    return _add_message


@pytest.fixture
def make_group(test_db):
    """Group whose members joined one second apart, in the given order; first is admin."""
    def _make_group(members, name="Test Group", start=None):
        start = start or datetime(2024, 1, 1, 12, 0, 0)
        group = Conversation(
            is_group=True,
            name=name,
            admin_id=members[0].account_id,
            created_by=members[0].account_id,
            created_at=start,
            updated_at=start,
        )
        test_db.add(group)
        test_db.flush()
        for offset, member in enumerate(members):
            test_db.add(
                ConversationParticipant(
                    conversation_id=group.id,
                    user_id=member.account_id,
                    joined_at=start + timedelta(seconds=offset),
                )
            )
        test_db.commit()
        test_db.refresh(group)
        return group

    return _make_group


@pytest.fixture
def make_dialog(test_db):
    def _make_dialog(user_a, user_b):
        dialog = Conversation(is_group=False, created_by=user_a.account_id)
        test_db.add(dialog)
        test_db.flush()
        test_db.add_all(
            [
                ConversationParticipant(conversation_id=dialog.id, user_id=user_a.account_id),
                ConversationParticipant(conversation_id=dialog.id, user_id=user_b.account_id),
            ]
        )
        test_db.commit()
        test_db.refresh(dialog)
        return dialog

    return _make_dialog
