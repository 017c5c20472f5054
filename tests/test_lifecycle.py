import asyncio

import pytest

from database import MemoryKeyValueStore, StorageError
from gpt_parser import FallbackClassifier, PatternClassifier
from lifecycle import (
    TaskLifecycle, STARTED, COMPLETED, ASSUMED_ESTIMATE, AWAITING_DURATION,
    NO_ACTIVE_TASK, IGNORED, FAILED, FAILED_TEXT, NO_ACTIVE_TASK_TEXT,
)
from models.task_model import PendingCompletion
from task_store import TaskStore

from conftest import CHAT_ID, USER_ID


class FlakyKV(MemoryKeyValueStore):
    """Падает на первых N записях."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def set(self, key, value):
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("write failed")
        super().set(key, value)


class BrokenReadKV(MemoryKeyValueStore):
    def get(self, key):
        raise StorageError("read failed")


class ExplodingClassifier:
    async def classify(self, text, username=None):
        raise RuntimeError("model is down")

    async def categorize(self, description):
        raise RuntimeError("model is down")


class SlowCategorizer(PatternClassifier):
    # Отдаёт управление циклу между чтением открытых задач и записью
    async def categorize(self, description):
        await asyncio.sleep(0)
        return await super().categorize(description)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_in_group_is_silent(self, lifecycle, store, event):
        result = await lifecycle.handle(event("30 min: fix bug"))

        assert result.actions == [STARTED]
        assert result.replies == []
        [task] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert task.estimated_minutes == 30
        assert task.task_description == "fix bug"
        assert task.source_message_id == 1
        assert task.username == "alice"

    @pytest.mark.asyncio
    async def test_start_in_private_chat_is_confirmed(self, lifecycle, event):
        result = await lifecycle.handle(event("30 min: fix bug", private=True))

        assert result.actions == [STARTED]
        assert result.replies == ["▶️ Started: fix bug (est. 30m)"]

    @pytest.mark.asyncio
    async def test_starting_keeps_other_open_tasks(self, lifecycle, store, event, clock):
        await lifecycle.handle(event("30 min: fix bug"))
        clock.advance(minutes=1)
        await lifecycle.handle(event("45 min: emails"))

        assert len(store.list_open_tasks(CHAT_ID, USER_ID)) == 2

    @pytest.mark.asyncio
    async def test_redelivered_message_starts_one_task(self, lifecycle, store, event):
        start = event("30 min: fix bug")
        await lifecycle.handle(start)
        await lifecycle.handle(start)

        assert len(store.list_tasks(CHAT_ID, USER_ID)) == 1


class TestCompletion:
    @pytest.mark.asyncio
    async def test_start_that_mentions_finishing(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))

        result = await lifecycle.handle(event("finish the report (45 min)"))

        assert result.actions == [STARTED]
        assert result.completed is None
        descriptions = sorted(task.task_description for task in store.list_open_tasks(CHAT_ID, USER_ID))
        assert descriptions == ["finish the report", "fix bug"]

    @pytest.mark.asyncio
    async def test_completion_with_duration(self, lifecycle, store, event, clock):
        await lifecycle.handle(event("30 min: fix bug"))
        clock.advance(minutes=45)

        result = await lifecycle.handle(event("done in 45 minutes"))

        assert result.actions == [COMPLETED]
        assert result.completed.actual_minutes == 45
        assert result.completed.accuracy_percentage == 67
        assert result.completed.category == "Coding"
        assert result.completed.completed_via_reply is False
        assert result.replies == ['📊 Task "fix bug" completed! Est: 30m, Actual: 45m (67% accuracy)']
        assert store.list_open_tasks(CHAT_ID, USER_ID) == []

    @pytest.mark.asyncio
    async def test_reply_closes_the_referenced_task(self, lifecycle, store, event, clock):
        first = event("30 min: fix bug")
        await lifecycle.handle(first)
        clock.advance(minutes=5)
        await lifecycle.handle(event("45 min: emails"))
        clock.advance(minutes=20)

        result = await lifecycle.handle(event("done in 20", reply_to=first.message_id))

        assert result.completed.task_description == "fix bug"
        assert result.completed.completed_via_reply is True
        [still_open] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert still_open.task_description == "emails"

    @pytest.mark.asyncio
    async def test_without_reply_the_latest_task_is_closed(self, lifecycle, store, event, clock):
        await lifecycle.handle(event("30 min: fix bug"))
        clock.advance(minutes=5)
        await lifecycle.handle(event("45 min: emails"))

        result = await lifecycle.handle(event("done in 40"))

        assert result.completed.task_description == "emails"
        assert result.completed.completed_via_reply is False
        [still_open] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert still_open.task_description == "fix bug"

    @pytest.mark.asyncio
    async def test_no_active_task(self, lifecycle, kv, event):
        result = await lifecycle.handle(event("done in 20"))

        assert result.actions == [NO_ACTIVE_TASK]
        assert result.replies == [NO_ACTIVE_TASK_TEXT]
        assert kv.data == {}

    @pytest.mark.asyncio
    async def test_other_users_tasks_are_not_touched(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug", user_id="43", username="bob"))

        result = await lifecycle.handle(event("done in 20"))

        assert result.actions == [NO_ACTIVE_TASK]
        assert len(store.list_open_tasks(CHAT_ID, "43")) == 1

    @pytest.mark.asyncio
    async def test_bare_duration_without_context_is_ignored(self, lifecycle, store, kv, event):
        await lifecycle.handle(event("30 min: fix bug"))
        before = dict(kv.data)

        result = await lifecycle.handle(event("25 minutes"))

        assert result.actions == [IGNORED]
        assert result.replies == []
        assert kv.data == before


class TestAwaitingDuration:
    @pytest.mark.asyncio
    async def test_number_in_description_is_not_a_duration(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: write chapter"))

        result = await lifecycle.handle(event("finished chapter 3"))

        assert result.actions == [AWAITING_DURATION]
        assert result.completed is None
        assert store.get_pending(CHAT_ID, USER_ID).task_description == "write chapter"
        [still_open] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert still_open.actual_minutes is None

    @pytest.mark.asyncio
    async def test_done_without_duration_asks_for_it(self, lifecycle, store, event):
        start = event("30 min: fix bug")
        await lifecycle.handle(start)

        result = await lifecycle.handle(event("done"))

        assert result.actions == [AWAITING_DURATION]
        assert "How long did it actually take?" in result.replies[0]
        pending = store.get_pending(CHAT_ID, USER_ID)
        assert pending.estimated_minutes == 30
        assert pending.task_description == "fix bug"
        assert pending.source_message_id == start.message_id
        assert pending.reply_reference is None
        assert len(store.list_open_tasks(CHAT_ID, USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_done_then_number(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))
        await lifecycle.handle(event("done"))

        result = await lifecycle.handle(event("20"))

        assert result.actions == [COMPLETED]
        assert result.completed.estimated_minutes == 30
        assert result.completed.actual_minutes == 20
        assert result.completed.accuracy_percentage == 67
        assert store.get_pending(CHAT_ID, USER_ID) is None
        assert store.list_open_tasks(CHAT_ID, USER_ID) == []

    @pytest.mark.asyncio
    async def test_duration_with_units(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))
        await lifecycle.handle(event("done"))

        result = await lifecycle.handle(event("25 minutes"))

        assert result.completed.actual_minutes == 25
        assert store.get_pending(CHAT_ID, USER_ID) is None

    @pytest.mark.asyncio
    async def test_completion_with_duration_resolves_pending(self, lifecycle, event):
        await lifecycle.handle(event("30 min: fix bug"))
        await lifecycle.handle(event("done"))

        result = await lifecycle.handle(event("took 35 mins"))

        assert result.actions == [COMPLETED]
        assert result.completed.actual_minutes == 35

    @pytest.mark.asyncio
    async def test_pending_binds_to_its_task_not_the_latest(self, lifecycle, store, event, clock):
        first = event("30 min: fix bug")
        await lifecycle.handle(first)
        clock.advance(minutes=5)
        await lifecycle.handle(event("done", reply_to=first.message_id))
        clock.advance(minutes=1)
        # Новая задача стартует, пока ждём длительность первой
        result = await lifecycle.handle(event("45 min: emails"))
        assert result.actions == [STARTED]
        assert store.get_pending(CHAT_ID, USER_ID) is not None

        result = await lifecycle.handle(event("15"))

        assert result.completed.task_description == "fix bug"
        assert result.completed.completed_via_reply is True
        [still_open] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert still_open.task_description == "emails"

    @pytest.mark.asyncio
    async def test_done_twice_assumes_estimate(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))
        await lifecycle.handle(event("done"))

        result = await lifecycle.handle(event("done"))

        assert result.actions == [ASSUMED_ESTIMATE]
        assert "100% accuracy" in result.replies[0]
        assert result.completed.actual_minutes == 30
        assert result.completed.accuracy_percentage == 100
        assert store.get_pending(CHAT_ID, USER_ID) is None

    @pytest.mark.asyncio
    async def test_message_without_number_keeps_waiting(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))
        await lifecycle.handle(event("done"))

        result = await lifecycle.handle(event("hmm let me think"))

        assert result.actions == [IGNORED]
        assert result.replies == []
        assert store.get_pending(CHAT_ID, USER_ID) is not None
        assert len(store.list_open_tasks(CHAT_ID, USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_number_inside_free_text(self, lifecycle, event):
        await lifecycle.handle(event("30 min: fix bug"))
        await lifecycle.handle(event("done"))

        result = await lifecycle.handle(event("honestly it was like 50 ugh"))

        assert result.completed.actual_minutes == 50

    @pytest.mark.asyncio
    async def test_done_without_open_task_does_not_wait(self, lifecycle, store, event):
        result = await lifecycle.handle(event("done"))

        assert result.actions == [NO_ACTIVE_TASK]
        assert store.get_pending(CHAT_ID, USER_ID) is None

    @pytest.mark.asyncio
    async def test_pending_for_vanished_task_is_cleared(self, lifecycle, store, event):
        store.set_pending(CHAT_ID, USER_ID, PendingCompletion(30, "fix bug", source_message_id=999))

        result = await lifecycle.handle(event("20"))

        assert result.actions == [NO_ACTIVE_TASK]
        assert store.get_pending(CHAT_ID, USER_ID) is None


class TestCompoundMessage:
    @pytest.mark.asyncio
    async def test_complete_then_start_with_now(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))

        result = await lifecycle.handle(event("took 20 mins, now 30 min on the slides"))

        assert result.actions == [COMPLETED, STARTED]
        assert result.completed.task_description == "fix bug"
        assert result.completed.actual_minutes == 20
        assert result.started.estimated_minutes == 30
        [open_task] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert open_task.task_description == "the slides"

    @pytest.mark.asyncio
    async def test_complete_then_start(self, lifecycle, store, event):
        await lifecycle.handle(event("30 min: fix bug"))

        message = event("done in 20, next 45 min: emails")
        result = await lifecycle.handle(message)

        assert result.actions == [COMPLETED, STARTED]
        assert result.completed.actual_minutes == 20
        assert result.started.estimated_minutes == 45
        assert result.started.task_description == "emails"
        assert result.started.source_message_id == message.message_id
        [open_task] = store.list_open_tasks(CHAT_ID, USER_ID)
        assert open_task.task_description == "emails"

    @pytest.mark.asyncio
    async def test_start_half_survives_missing_task(self, lifecycle, store, event):
        result = await lifecycle.handle(event("done in 20, next 45 min: emails"))

        assert result.actions == [NO_ACTIVE_TASK, STARTED]
        assert len(store.list_open_tasks(CHAT_ID, USER_ID)) == 1

    @pytest.mark.asyncio
    async def test_start_half_survives_storage_error(self, clock, event):
        kv = FlakyKV(failures=0)
        store = TaskStore(kv, clock=clock)
        lifecycle = TaskLifecycle(store, FallbackClassifier(), clock=clock)
        await lifecycle.handle(event("30 min: fix bug"))
        kv.failures = 1

        result = await lifecycle.handle(event("done in 20, next 45 min: emails"))

        assert result.actions == [FAILED, STARTED]
        assert FAILED_TEXT in result.replies
        descriptions = sorted(task.task_description for task in store.list_open_tasks(CHAT_ID, USER_ID))
        assert descriptions == ["emails", "fix bug"]


class TestFailures:
    @pytest.mark.asyncio
    async def test_write_failure_is_reported_not_raised(self, clock, event):
        store = TaskStore(FlakyKV(failures=1), clock=clock)
        lifecycle = TaskLifecycle(store, FallbackClassifier(), clock=clock)

        result = await lifecycle.handle(event("30 min: fix bug"))

        assert result.actions == [FAILED]
        assert result.replies == [FAILED_TEXT]
        assert store.list_tasks(CHAT_ID, USER_ID) == []

    @pytest.mark.asyncio
    async def test_read_failure_is_reported_not_raised(self, clock, event):
        lifecycle = TaskLifecycle(TaskStore(BrokenReadKV(), clock=clock), FallbackClassifier(), clock=clock)

        result = await lifecycle.handle(event("done in 20"))

        assert result.actions == [FAILED]

    @pytest.mark.asyncio
    async def test_classifier_failure_is_neutral(self, store, clock, event):
        lifecycle = TaskLifecycle(store, ExplodingClassifier(), clock=clock)

        result = await lifecycle.handle(event("30 min: fix bug"))

        assert result.actions == [IGNORED]
        assert store.list_tasks(CHAT_ID, USER_ID) == []

    @pytest.mark.asyncio
    async def test_categorizer_failure_defaults_to_other(self, store, clock, event):
        await TaskLifecycle(store, FallbackClassifier(), clock=clock).handle(event("30 min: fix bug"))

        class PatternsWithoutCategories(PatternClassifier):
            async def categorize(self, description):
                raise RuntimeError("nope")

        lifecycle = TaskLifecycle(store, PatternsWithoutCategories(), clock=clock)
        result = await lifecycle.handle(event("done in 30"))

        assert result.completed.category == "Other"
        assert result.completed.accuracy_percentage == 100


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_completions_close_a_task_once(self, store, clock, event):
        """
        Оба "готово" читают одну и ту же открытую задачу до записи.
        Блокировок нет; повторное закрытие отсекает только проверка в close_task.
        """
        await TaskLifecycle(store, FallbackClassifier(), clock=clock).handle(event("30 min: fix bug"))
        lifecycle = TaskLifecycle(store, SlowCategorizer(), clock=clock)

        results = await asyncio.gather(
            lifecycle.handle(event("done in 20")),
            lifecycle.handle(event("done in 25")),
        )

        actions = sorted(action for result in results for action in result.actions)
        assert actions == sorted([COMPLETED, NO_ACTIVE_TASK])
        [closed] = store.list_completed_tasks(CHAT_ID, USER_ID)
        assert closed.actual_minutes in (20, 25)
