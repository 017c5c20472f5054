from datetime import datetime, timedelta, timezone

import pytest

from database import MemoryKeyValueStore
from gpt_parser import FallbackClassifier
from lifecycle import TaskLifecycle
from models.task_model import ChatEvent
from task_store import TaskStore

CHAT_ID = "-100500"
USER_ID = "42"


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class EventFactory:
    def __init__(self):
        self.message_id = 0

    def __call__(self, text, chat_id=CHAT_ID, user_id=USER_ID, username="alice", reply_to=None, private=False):
        self.message_id += 1
        return ChatEvent(
            chat_id=chat_id,
            user_id=user_id,
            username=username,
            message_id=self.message_id,
            text=text,
            reply_to_message_id=reply_to,
            is_private=private,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv, clock):
    return TaskStore(kv, clock=clock)


@pytest.fixture
def classifier():
    # Только шаблоны: детерминированно и без сети
    return FallbackClassifier()


@pytest.fixture
def lifecycle(store, classifier, clock):
    return TaskLifecycle(store, classifier, clock=clock)


@pytest.fixture
def event():
    return EventFactory()
